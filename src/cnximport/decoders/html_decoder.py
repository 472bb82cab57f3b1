"""Rendered-HTML module decoder for archives that ship ``index.cnxml.html``."""

from __future__ import annotations

import html
import re

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PageElement, PreformattedString

from cnximport.archive import ArchiveHandle
from cnximport.decoders.base import BlockIds, DocumentParseError, first_existing, is_external, resolve_asset_path
from cnximport.host import guess_media_kind
from cnximport.models import (
    ASSET_HREF_PREFIX,
    MODULE_HREF_PREFIX,
    AssetReference,
    BlockKind,
    ContentBlock,
    MediaKind,
    Module,
    Outcome,
)
from cnximport.normalization import normalize_whitespace

DOCUMENT_NAMES = ("index.cnxml.html",)

_HEADING_TAGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}
_MODULE_HREF_RE = re.compile(r"^(?:/?contents/|\./|/)?(?P<module>m\d+)(?:@[\d.]+)?(?:\.x?html)?(?P<fragment>#.*)?$")
_WHITESPACE_RE = re.compile(r"\s+")
_SKIPPED_TAGS = frozenset({"script", "style", "head", "meta", "link", "noscript"})
_INLINE_TAGS = frozenset(
    {"a", "abbr", "b", "br", "cite", "code", "dfn", "em", "i", "kbd", "mark"}
    | {"q", "s", "small", "span", "strong", "sub", "sup", "u", "var"}
)
_BLOCK_TAGS = [
    *_HEADING_TAGS,
    "p",
    "div",
    "section",
    "ul",
    "ol",
    "dl",
    "blockquote",
    "table",
    "img",
    "figure",
    "math",
    "pre",
    "audio",
    "video",
    "iframe",
    "object",
    "embed",
]


def _text(node: Tag) -> str:
    return normalize_whitespace(node.get_text(" ", strip=True))


def _is_inline(node: PageElement) -> bool:
    if isinstance(node, NavigableString):
        return not isinstance(node, PreformattedString)
    return isinstance(node, Tag) and node.name in _INLINE_TAGS and node.find(_BLOCK_TAGS) is None


def _rewrite_href(href: str) -> str:
    match = _MODULE_HREF_RE.match(href.strip())
    if match is None:
        return href
    return f"{MODULE_HREF_PREFIX}{match.group('module')}{match.group('fragment') or ''}"


class _HtmlWalker:
    def __init__(self, module_id: str, document_path: str) -> None:
        self.module_id = module_id
        self.document_path = document_path
        self.ids = BlockIds(module_id)
        self.blocks: list[ContentBlock] = []
        self.assets: list[AssetReference] = []

    def walk(self, node: Tag) -> None:
        run: list[PageElement] = []
        for child in node.children:
            if _is_inline(child):
                run.append(child)
                continue
            self._loose_run(run)
            run = []
            if isinstance(child, Tag) and child.name not in _SKIPPED_TAGS:
                self._dispatch(child)
        self._loose_run(run)

    def _dispatch(self, child: Tag) -> None:
        name = child.name
        if name in _HEADING_TAGS:
            text = _text(child)
            if text:
                self.blocks.append(
                    ContentBlock(
                        block_id=self.ids.next(child.get("id")),
                        kind=BlockKind.HEADING,
                        text=text,
                        level=_HEADING_TAGS[name],
                    )
                )
        elif name == "p":
            self._inline_run(list(child.children), child.get("id"))
        elif name == "dt" and child.find(_BLOCK_TAGS) is None:
            self._inline_run(list(child.children), child.get("id"), wrap="dfn")
        elif name in ("ul", "ol"):
            self._list(child)
        elif name == "table":
            self._table(child)
        elif name == "img":
            self._image(child, caption=None)
        elif name == "figure":
            self._figure(child)
        elif name == "math":
            self._math(child, display=child.get("display") or "block")
        elif name == "pre":
            literal = child.get_text().strip("\n")
            if literal.strip():
                self.blocks.append(
                    ContentBlock(
                        block_id=self.ids.next(child.get("id")),
                        kind=BlockKind.RAW_EMBED,
                        text=literal,
                        markup=f"<pre>{html.escape(literal, quote=False)}</pre>",
                    )
                )
        elif name in ("audio", "video", "iframe", "object", "embed"):
            self._other_media(child)
        else:
            self.walk(child)

    def _loose_run(self, run: list[PageElement]) -> None:
        # text sitting directly in a container becomes its own paragraph
        if any(node.strip() if isinstance(node, NavigableString) else _text(node) for node in run):
            self._inline_run(run)

    def _inline_run(
        self,
        nodes: list[PageElement],
        preferred_id: str | None = None,
        *,
        wrap: str | None = None,
    ) -> None:
        block_id = self.ids.next(preferred_id)
        html_parts: list[str] = []
        text_parts: list[str] = []

        def flush() -> None:
            nonlocal block_id, html_parts, text_parts
            text = normalize_whitespace(" ".join(text_parts))
            markup = _WHITESPACE_RE.sub(" ", "".join(html_parts)).strip()
            if text or "<" in markup:
                if wrap:
                    markup = f"<{wrap}>{markup}</{wrap}>"
                self.blocks.append(ContentBlock(block_id=block_id, kind=BlockKind.PARAGRAPH, text=text, html=markup))
            block_id = self.ids.next()
            html_parts = []
            text_parts = []

        for child in nodes:
            if isinstance(child, NavigableString):
                if not isinstance(child, PreformattedString):
                    html_parts.append(html.escape(str(child), quote=False))
                    text_parts.append(str(child))
            elif not isinstance(child, Tag) or child.name in _SKIPPED_TAGS:
                continue
            elif child.name == "math":
                flush()
                self._math(child, display=child.get("display") or "inline")
            elif child.name in _BLOCK_TAGS:
                flush()
                self._dispatch(child)
            elif child.find(_BLOCK_TAGS) is not None:
                flush()
                self.walk(child)
            else:
                self._rewrite_links(child, block_id)
                html_parts.append(str(child))
                text_parts.append(child.get_text(" "))
        flush()

    def _rewrite_links(self, node: Tag, block_id: str) -> None:
        anchors = [node] if node.name == "a" else []
        anchors.extend(node.find_all("a"))
        for anchor in anchors:
            href = anchor.get("href")
            if not href:
                continue
            rewritten = _rewrite_href(href)
            if rewritten == href and not is_external(href) and not href.startswith("#"):
                path = resolve_asset_path(self.document_path, href)
                self.assets.append(
                    AssetReference(original_path=path, block_id=block_id, media_kind=guess_media_kind(path))
                )
                rewritten = f"{ASSET_HREF_PREFIX}{path}"
            anchor["href"] = rewritten

    def _rewrite_images(self, node: Tag, block_id: str) -> None:
        for image in node.find_all("img"):
            src = (image.get("src") or "").strip()
            if not src or is_external(src):
                continue
            path = resolve_asset_path(self.document_path, src)
            self.assets.append(AssetReference(original_path=path, block_id=block_id, media_kind=MediaKind.IMAGE))
            image["src"] = f"{ASSET_HREF_PREFIX}{path}"

    def _list(self, node: Tag) -> None:
        block_id = self.ids.next(node.get("id"))
        items: list[str] = []
        rendered: list[str] = []
        for item in node.find_all("li", recursive=False):
            self._rewrite_links(item, block_id)
            self._rewrite_images(item, block_id)
            text = _text(item)
            if text or item.find("img") is not None:
                items.append(text)
                rendered.append(f"<li>{_WHITESPACE_RE.sub(' ', item.decode_contents()).strip()}</li>")
        if not items:
            return
        self.blocks.append(
            ContentBlock(
                block_id=block_id,
                kind=BlockKind.LIST,
                html=f"<{node.name}>{''.join(rendered)}</{node.name}>",
                items=items,
                ordered=node.name == "ol",
            )
        )

    def _table(self, node: Tag) -> None:
        row_nodes = [row for row in node.find_all("tr") if row.find_parent("table") is node]
        if not row_nodes:
            return

        block_id = self.ids.next(node.get("id"))
        rows: list[list[str]] = []
        body: list[str] = []
        for row in row_nodes:
            cells = row.find_all(["td", "th"], recursive=False)
            for cell in cells:
                self._rewrite_links(cell, block_id)
                self._rewrite_images(cell, block_id)
            rows.append([_text(cell) for cell in cells])
            body.append(
                "<tr>"
                + "".join(f"<td>{_WHITESPACE_RE.sub(' ', cell.decode_contents()).strip()}</td>" for cell in cells)
                + "</tr>"
            )

        caption = node.find("caption")
        self.blocks.append(
            ContentBlock(
                block_id=block_id,
                kind=BlockKind.TABLE,
                html=f"<table>{''.join(body)}</table>",
                rows=rows,
                caption=_text(caption) if caption is not None else None,
            )
        )

    def _figure(self, node: Tag) -> None:
        caption_node = node.find("figcaption")
        caption = _text(caption_node) if caption_node is not None else None
        images = node.find_all("img")
        if not images:
            self.walk(node)
            return
        for image in images:
            self._image(image, caption=caption or None, preferred_id=node.get("id"))

    def _image(self, node: Tag, *, caption: str | None, preferred_id: str | None = None) -> None:
        src = (node.get("src") or "").strip()
        if not src:
            return
        block = ContentBlock(
            block_id=self.ids.next(preferred_id or node.get("id")),
            kind=BlockKind.FIGURE,
            text=normalize_whitespace(node.get("alt") or ""),
            caption=caption,
            media_kind=MediaKind.IMAGE,
        )
        self._attach_src(block, src, MediaKind.IMAGE)
        self.blocks.append(block)

    def _other_media(self, node: Tag) -> None:
        src = (node.get("src") or node.get("data") or "").strip()
        if not src:
            source = node.find("source")
            src = (source.get("src") or "").strip() if source is not None else ""
        if not src:
            return
        media_kind = guess_media_kind(src, node.get("type"))
        block = ContentBlock(
            block_id=self.ids.next(node.get("id")),
            kind=BlockKind.RAW_EMBED,
            text=_text(node),
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

    def _math(self, node: Tag, *, display: str) -> None:
        self.blocks.append(
            ContentBlock(
                block_id=self.ids.next(node.get("id")),
                kind=BlockKind.MATH,
                text=normalize_whitespace(node.get("alttext") or "") or _text(node),
                markup=str(node),
                display=display,
            )
        )


class HTMLDecoder:
    """Decode rendered ``index.cnxml.html`` module documents."""

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
        soup = BeautifulSoup(payload, "lxml", from_encoding="utf-8")
        if soup.find("html") is None and soup.find("body") is None:
            raise DocumentParseError("Rendered module has no html or body element")

        body = soup.body or soup
        document_title = ""
        title_node = soup.find(attrs={"data-type": "document-title"}) or soup.title
        if title_node is not None:
            document_title = _text(title_node)
            if title_node.name != "title":
                title_node.decompose()

        walker = _HtmlWalker(module_id, document_path)
        walker.walk(body)

        module = Module(
            module_id=module_id,
            title=title or document_title or module_id,
            blocks=walker.blocks,
            assets=walker.assets,
        )
        return Outcome(value=module)
