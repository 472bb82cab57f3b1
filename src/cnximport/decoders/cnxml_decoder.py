"""CNXML module decoder preserving reading order."""

from __future__ import annotations

import html
import logging
import posixpath
import re

from lxml import etree

from cnximport.archive import ArchiveHandle
from cnximport.decoders.base import (
    BlockIds,
    DocumentParseError,
    first_existing,
    is_external,
    resolve_asset_path,
)
from cnximport.host import guess_media_kind
from cnximport.models import (
    ASSET_HREF_PREFIX,
    MODULE_HREF_PREFIX,
    AssetReference,
    BlockKind,
    ContentBlock,
    ImportIssue,
    IssueKind,
    MediaKind,
    Module,
    Outcome,
)
from cnximport.normalization import normalize_whitespace

logger = logging.getLogger(__name__)

DOCUMENT_NAMES = ("index.cnxml", "index_auto_generated.cnxml")

_XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"
_WHITESPACE_RE = re.compile(r"\s+")

_CONTAINER_TAGS = frozenset(
    {
        "note",
        "example",
        "exercise",
        "problem",
        "solution",
        "commentary",
        "glossary",
        "quote",
        "rule",
        "statement",
        "proof",
        "seealso",
        "div",
    }
)
_SKIPPED_TAGS = frozenset({"title", "label", "caption", "metadata", "newline", "space"})
_BLOCK_TAGS_IN_PARA = frozenset({"list", "equation", "figure", "media", "table", "preformat", "note"})
_OTHER_MEDIA_TAGS = ("audio", "video", "download", "object", "flash", "java-applet", "labview", "iframe")
_PRINT_ONLY = frozenset({"pdf", "print"})

_EMPHASIS_TAGS = {
    "bold": "strong",
    "italics": "em",
    "underline": "u",
}
_INLINE_TAGS = {
    "sub": "sub",
    "sup": "sup",
    "code": "code",
    "cite": "cite",
    "cite-title": "cite",
    "quote": "q",
    "term": "dfn",
}


def _local_name(element: object) -> str:
    tag = getattr(element, "tag", None)
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def _child(element: etree._Element, name: str) -> etree._Element | None:
    for child in element:
        if _local_name(child) == name:
            return child
    return None


def _plain_text(element: etree._Element | None) -> str:
    if element is None:
        return ""
    return normalize_whitespace(" ".join(element.itertext()))


def _serialize(element: etree._Element) -> str:
    return etree.tostring(element, encoding="unicode", with_tail=False)


class _UnparsableBlock(ValueError):
    """A block element whose structure cannot be mapped to a content block."""


class _InlineBuffer:
    """Accumulate inline HTML and plain text for one paragraph segment."""

    def __init__(self, block_id: str) -> None:
        self.block_id = block_id
        self._html: list[str] = []
        self._text: list[str] = []

    def add_text(self, text: str | None) -> None:
        if text:
            self._html.append(html.escape(text, quote=False))
            self._text.append(text)

    def add_markup(self, markup: str, text: str = "") -> None:
        self._html.append(markup)
        if text:
            self._text.append(text)

    @property
    def text(self) -> str:
        return normalize_whitespace("".join(self._text))

    @property
    def html(self) -> str:
        return _WHITESPACE_RE.sub(" ", "".join(self._html)).strip()


class _CnxmlWalker:
    """Depth-first walk over a CNXML content tree emitting content blocks."""

    def __init__(self, module_id: str, document_path: str) -> None:
        self.module_id = module_id
        self.document_path = document_path
        self.ids = BlockIds(module_id)
        self.blocks: list[ContentBlock] = []
        self.assets: list[AssetReference] = []
        self.issues: list[ImportIssue] = []

    def walk(self, element: etree._Element, depth: int) -> None:
        for child in element:
            name = _local_name(child)
            if not name or name in _SKIPPED_TAGS:
                continue
            self._dispatch(child, name, depth)

    def _dispatch(self, element: etree._Element, name: str, depth: int) -> None:
        try:
            if name == "section":
                self._section(element, depth)
            elif name == "para":
                self._para(element, depth)
            elif name == "list":
                self._list(element)
            elif name == "table":
                self._table(element)
            elif name in ("figure", "subfigure"):
                self._figure(element, depth)
            elif name == "media":
                self._media(element, caption=None, preferred_id=element.get("id"))
            elif name == "equation":
                self._equation(element)
            elif name == "math":
                self._math(element, display="block")
            elif name in ("code", "preformat"):
                self._code(element)
            elif name == "definition":
                self._definition(element)
            elif name in _CONTAINER_TAGS:
                self._container(element, depth)
            else:
                self._raw_embed(element)
        except _UnparsableBlock as exc:
            self._raw_embed(element, reason=str(exc))

    # -- block handlers -----------------------------------------------------

    def add_heading(self, text: str, depth: int, preferred_id: str | None) -> None:
        self.blocks.append(
            ContentBlock(
                block_id=self.ids.next(preferred_id),
                kind=BlockKind.HEADING,
                text=text,
                level=min(depth + 1, 6),
            )
        )

    def _section(self, element: etree._Element, depth: int) -> None:
        title = _plain_text(_child(element, "title"))
        if title:
            self.add_heading(title, depth, element.get("id"))
        self.walk(element, depth + 1)

    def _container(self, element: etree._Element, depth: int) -> None:
        title = _plain_text(_child(element, "title")) or _plain_text(_child(element, "label"))
        if title:
            self.add_heading(title, depth, element.get("id"))
        self.walk(element, depth + 1)

    def _para(self, element: etree._Element, depth: int) -> None:
        buffer = _InlineBuffer(self.ids.next(element.get("id")))
        buffer.add_text(element.text)

        for child in element:
            name = _local_name(child)
            if not name:
                buffer.add_text(child.tail)
                continue
            if name == "math":
                self._flush(buffer)
                self._math(child, display="inline")
                buffer = _InlineBuffer(self.ids.next())
            elif name in _BLOCK_TAGS_IN_PARA or (name == "code" and child.get("display") == "block"):
                self._flush(buffer)
                self._dispatch(child, name, depth)
                buffer = _InlineBuffer(self.ids.next())
            elif name == "title":
                title = _plain_text(child)
                buffer.add_markup(f"<strong>{html.escape(title, quote=False)}</strong> ", f"{title} ")
            else:
                self._render_inline(child, buffer)
            buffer.add_text(child.tail)

        self._flush(buffer)

    def _flush(self, buffer: _InlineBuffer) -> None:
        text = buffer.text
        if not text and "<" not in buffer.html:
            return
        self.blocks.append(
            ContentBlock(
                block_id=buffer.block_id,
                kind=BlockKind.PARAGRAPH,
                text=text,
                html=buffer.html,
            )
        )

    def _list(self, element: etree._Element) -> None:
        ordered = (element.get("list-type") or "").lower() == "enumerated"
        block_id = self.ids.next(element.get("id"))
        items: list[str] = []
        rendered: list[str] = []
        for item in element:
            if _local_name(item) != "item":
                continue
            buffer = _InlineBuffer(block_id)
            self._render_children(item, buffer)
            if buffer.text or "<" in buffer.html:
                items.append(buffer.text)
                rendered.append(f"<li>{buffer.html}</li>")
        if not items:
            return
        tag = "ol" if ordered else "ul"
        self.blocks.append(
            ContentBlock(
                block_id=block_id,
                kind=BlockKind.LIST,
                text=_plain_text(_child(element, "title")),
                html=f"<{tag}>{''.join(rendered)}</{tag}>",
                items=items,
                ordered=ordered,
            )
        )

    def _table(self, element: etree._Element) -> None:
        row_elements = [
            row
            for row in element.iter()
            if _local_name(row) == "row"
            and not any(_local_name(ancestor) == "entrytbl" for ancestor in row.iterancestors())
        ]
        if not row_elements:
            raise _UnparsableBlock("table has no rows")

        block_id = self.ids.next(element.get("id"))
        rows: list[list[str]] = []
        body: list[str] = []
        for row in row_elements:
            cells: list[str] = []
            rendered: list[str] = []
            for cell in row:
                name = _local_name(cell)
                if name == "entrytbl":
                    text = _plain_text(cell)
                    cells.append(text)
                    rendered.append(f"<td>{html.escape(text, quote=False)}</td>")
                elif name == "entry":
                    buffer = _InlineBuffer(block_id)
                    self._render_children(cell, buffer)
                    cells.append(buffer.text)
                    rendered.append(f"<td>{buffer.html}</td>")
            rows.append(cells)
            body.append(f"<tr>{''.join(rendered)}</tr>")

        self.blocks.append(
            ContentBlock(
                block_id=block_id,
                kind=BlockKind.TABLE,
                html=f"<table>{''.join(body)}</table>",
                rows=rows,
                caption=_plain_text(_child(element, "caption")) or _plain_text(_child(element, "title")) or None,
            )
        )

    def _figure(self, element: etree._Element, depth: int, inherited_caption: str | None = None) -> None:
        caption = (
            _plain_text(_child(element, "caption"))
            or _plain_text(_child(element, "title"))
            or inherited_caption
            or None
        )
        subfigures = [child for child in element if _local_name(child) == "subfigure"]
        if subfigures:
            for subfigure in subfigures:
                self._figure(subfigure, depth, inherited_caption=caption)
            return

        media = _child(element, "media")
        if media is None:
            self.walk(element, depth)
            return
        self._media(media, caption=caption, preferred_id=element.get("id"))

    def _media_source(self, media: etree._Element) -> tuple[str, MediaKind]:
        if _local_name(media) == "image":
            images = [media]
        else:
            images = [child for child in media if _local_name(child) == "image"]
        online = [image for image in images if (image.get("for") or "default").lower() not in _PRINT_ONLY]
        candidates = online or images

        if candidates:
            src = (candidates[0].get("src") or "").strip()
            if not src:
                raise _UnparsableBlock("image without a src attribute")
            return src, MediaKind.IMAGE

        source = next(
            (child for child in media if _local_name(child) in _OTHER_MEDIA_TAGS and child.get("src")),
            None,
        )
        if source is not None:
            src = source.get("src", "").strip()
            return src, guess_media_kind(src, source.get("mime-type"))
        if media.get("src"):
            # CNXML 0.5 puts the source on the media element itself
            src = media.get("src", "").strip()
            return src, guess_media_kind(src, media.get("type"))
        raise _UnparsableBlock("media element has no source")

    def _media(self, media: etree._Element, *, caption: str | None, preferred_id: str | None) -> None:
        src, media_kind = self._media_source(media)
        block = ContentBlock(
            block_id=self.ids.next(preferred_id or media.get("id")),
            kind=BlockKind.FIGURE if media_kind is MediaKind.IMAGE else BlockKind.RAW_EMBED,
            text=normalize_whitespace(media.get("alt") or ""),
            caption=caption,
            media_kind=media_kind,
        )
        self._attach_src(block, src, media_kind)
        self.blocks.append(block)

    def _attach_src(self, block: ContentBlock, src: str, media_kind: MediaKind) -> None:
        if is_external(src):
            block.src = src
            return
        path = resolve_asset_path(self.document_path, src)
        block.src = path
        self.assets.append(AssetReference(original_path=path, block_id=block.block_id, media_kind=media_kind))

    def _asset_href(self, src: str, block_id: str, media_kind: MediaKind) -> str:
        if is_external(src):
            return src
        path = resolve_asset_path(self.document_path, src)
        self.assets.append(AssetReference(original_path=path, block_id=block_id, media_kind=media_kind))
        return f"{ASSET_HREF_PREFIX}{path}"

    def _equation(self, element: etree._Element) -> None:
        math = next((node for node in element.iter() if _local_name(node) == "math"), None)
        block_id = self.ids.next(element.get("id"))
        if math is not None:
            self.blocks.append(
                ContentBlock(
                    block_id=block_id,
                    kind=BlockKind.MATH,
                    text=normalize_whitespace(math.get("alttext") or "") or _plain_text(math),
                    markup=_serialize(math),
                    display="block",
                )
            )
            return

        parts = [_plain_text(child) for child in element if _local_name(child) not in ("title", "label")]
        text = normalize_whitespace(" ".join([element.text or "", *parts]))
        if text:
            self.blocks.append(ContentBlock(block_id=block_id, kind=BlockKind.MATH, text=text, display="block"))

    def _math(self, element: etree._Element, *, display: str) -> None:
        self.blocks.append(
            ContentBlock(
                block_id=self.ids.next(element.get("id")),
                kind=BlockKind.MATH,
                text=normalize_whitespace(element.get("alttext") or "") or _plain_text(element),
                markup=_serialize(element),
                display=element.get("display") or display,
            )
        )

    def _code(self, element: etree._Element) -> None:
        literal = "".join(element.itertext()).strip("\n")
        if not literal.strip():
            return
        self.blocks.append(
            ContentBlock(
                block_id=self.ids.next(element.get("id")),
                kind=BlockKind.RAW_EMBED,
                text=literal,
                markup=f"<pre>{html.escape(literal, quote=False)}</pre>",
            )
        )

    def _definition(self, element: etree._Element) -> None:
        term = _plain_text(_child(element, "term"))
        meanings = [_plain_text(child) for child in element if _local_name(child) == "meaning"]
        meaning_text = "; ".join(meaning for meaning in meanings if meaning)
        if not term and not meaning_text:
            return
        text = f"{term}: {meaning_text}" if term and meaning_text else term or meaning_text
        markup = html.escape(meaning_text, quote=False)
        if term:
            markup = f"<dfn>{html.escape(term, quote=False)}</dfn>" + (f": {markup}" if meaning_text else "")
        self.blocks.append(
            ContentBlock(
                block_id=self.ids.next(element.get("id")),
                kind=BlockKind.PARAGRAPH,
                text=text,
                html=markup,
            )
        )

    def _raw_embed(self, element: etree._Element, reason: str | None = None) -> None:
        block_id = self.ids.next(element.get("id"))
        self.blocks.append(
            ContentBlock(
                block_id=block_id,
                kind=BlockKind.RAW_EMBED,
                text=_plain_text(element),
                markup=_serialize(element),
            )
        )
        if reason is not None:
            self._report(element, block_id, f"kept as raw markup: {reason}")

    def _report(self, element: etree._Element, block_id: str, problem: str) -> None:
        logger.warning("Module %s block %s: <%s> %s", self.module_id, block_id, _local_name(element), problem)
        self.issues.append(
            ImportIssue(
                kind=IssueKind.MODULE_PARSE_ERROR,
                subject=f"{self.module_id}#{block_id}",
                message=f"Unparsable <{_local_name(element)}> block {problem}",
                module_id=self.module_id,
            )
        )

    # -- inline rendering ---------------------------------------------------

    def _render_children(self, element: etree._Element, buffer: _InlineBuffer) -> None:
        buffer.add_text(element.text)
        for child in element:
            if _local_name(child):
                self._render_inline(child, buffer)
            buffer.add_text(child.tail)

    def _render_inline(self, element: etree._Element, buffer: _InlineBuffer) -> None:
        name = _local_name(element)
        if name == "math":
            buffer.add_markup(_serialize(element), _plain_text(element))
        elif name == "newline":
            count = int(element.get("count") or 1) if (element.get("count") or "1").isdigit() else 1
            buffer.add_markup("<br/>" * count, " ")
        elif name == "space":
            buffer.add_text(" ")
        elif name in ("link", "cnxn"):
            self._render_link(element, buffer)
        elif name in ("media", "image"):
            self._render_media(element, buffer)
        elif name == "emphasis":
            tag = _EMPHASIS_TAGS.get((element.get("effect") or "bold").lower(), "span")
            self._wrap(element, buffer, tag)
        elif name == "foreign":
            lang = element.get(_XML_LANG)
            attrs = f' lang="{html.escape(lang)}"' if lang else ""
            self._wrap(element, buffer, "span", attrs)
        elif name == "footnote":
            self._wrap(element, buffer, "span", ' class="footnote"')
        elif name in _INLINE_TAGS:
            self._wrap(element, buffer, _INLINE_TAGS[name])
        else:
            self._render_children(element, buffer)

    def _wrap(self, element: etree._Element, buffer: _InlineBuffer, tag: str, attrs: str = "") -> None:
        buffer.add_markup(f"<{tag}{attrs}>")
        self._render_children(element, buffer)
        buffer.add_markup(f"</{tag}>")

    def _render_media(self, element: etree._Element, buffer: _InlineBuffer) -> None:
        try:
            src, media_kind = self._media_source(element)
        except _UnparsableBlock as exc:
            self._report(element, buffer.block_id, f"dropped: {exc}")
            return

        alt = normalize_whitespace(element.get("alt") or "")
        href = html.escape(self._asset_href(src, buffer.block_id, media_kind))
        if media_kind is MediaKind.IMAGE:
            buffer.add_markup(f'<img src="{href}" alt="{html.escape(alt)}"/>', alt)
            return
        label = alt or posixpath.basename(src)
        buffer.add_markup(f'<a href="{href}">{html.escape(label, quote=False)}</a>', label)

    def _render_link(self, element: etree._Element, buffer: _InlineBuffer) -> None:
        href = self._link_href(element, buffer.block_id)
        if href is None:
            self._render_children(element, buffer)
            return
        buffer.add_markup(f'<a href="{html.escape(href)}">')
        if element.text or len(element):
            self._render_children(element, buffer)
        else:
            buffer.add_text(element.get("document") or element.get("target-id") or element.get("url") or href)
        buffer.add_markup("</a>")

    def _link_href(self, element: etree._Element, block_id: str) -> str | None:
        url = (element.get("url") or "").strip()
        if url:
            return url

        resource = (element.get("resource") or "").strip()
        if resource:
            return self._asset_href(resource, block_id, guess_media_kind(resource))

        document = (element.get("document") or "").strip()
        target = (element.get("target-id") or element.get("target") or "").strip()
        if document:
            return f"{MODULE_HREF_PREFIX}{document}" + (f"#{target}" if target else "")
        if target:
            return f"#{target}"
        return None


class CNXMLDecoder:
    """Decode ``index.cnxml`` module documents."""

    def locate(self, handle: ArchiveHandle, module_id: str) -> str | None:
        return first_existing(handle, [f"{module_id}/{name}" for name in DOCUMENT_NAMES])

    def decode(
        self,
        payload: bytes,
        *,
        module_id: str,
        document_path: str,
        title: str | None = None,
    ) -> Outcome[Module]:
        parser = etree.XMLParser(
            resolve_entities=False,
            no_network=True,
            load_dtd=False,
            huge_tree=False,
            encoding="utf-8",
        )
        try:
            root = etree.fromstring(payload, parser=parser)
        except (etree.XMLSyntaxError, ValueError) as exc:
            raise DocumentParseError(f"Unparsable CNXML: {exc}") from exc

        if _local_name(root) != "document":
            raise DocumentParseError(f"CNXML root element is {_local_name(root)!r}, expected 'document'")

        walker = _CnxmlWalker(module_id, document_path)
        content = _child(root, "content")
        if content is not None:
            walker.walk(content, depth=0)

        glossary = _child(root, "glossary")
        if glossary is not None and len(glossary):
            walker.add_heading("Glossary", 0, glossary.get("id"))
            walker.walk(glossary, depth=1)

        module = Module(
            module_id=module_id,
            title=title or _plain_text(_child(root, "title")) or module_id,
            blocks=walker.blocks,
            assets=walker.assets,
        )
        return Outcome(value=module, issues=walker.issues)
