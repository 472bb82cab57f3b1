"""Collection manifest (``collection.xml``) parser."""

from __future__ import annotations

import logging
import re

from lxml import etree

from cnximport.archive import ArchiveHandle
from cnximport.errors import EntryNotFound, ManifestMalformed, ManifestMissing
from cnximport.models import (
    Collection,
    CollectionNode,
    ImportIssue,
    IssueKind,
    ModuleReference,
    Outcome,
    Part,
)
from cnximport.normalization import normalize_whitespace

logger = logging.getLogger(__name__)

MANIFEST_PATH = "collection.xml"
UNTITLED_COLLECTION = "Untitled Collection"
UNTITLED_PART = "Untitled Part"

_DATE_RE = re.compile(r"^\d{4}[/-]\d{2}[/-]\d{2}([ T].*)?$")
_LANGUAGE_RE = re.compile(r"^[A-Za-z]{2,3}(-[A-Za-z0-9]{1,8})*$")
_MODULE_ID_RE = re.compile(r"^[A-Za-z0-9_.@-]+$")


def _parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False, huge_tree=False)


def _local_name(element: etree._Element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def _children(element: etree._Element, name: str) -> list[etree._Element]:
    return [child for child in element if _local_name(child) == name]


def _child(element: etree._Element, name: str) -> etree._Element | None:
    for child in element:
        if _local_name(child) == name:
            return child
    return None


def _text(element: etree._Element | None) -> str:
    if element is None:
        return ""
    return normalize_whitespace(" ".join(element.itertext()))


def _attribute(element: etree._Element, name: str) -> str | None:
    """Read an attribute by local name, ignoring its namespace."""

    for key, value in element.attrib.items():
        if etree.QName(key).localname == name:
            return value.strip()
    return None


class _MetadataReader:
    """Read optional collxml metadata fields, downgrading bad ones to issues."""

    def __init__(self, metadata: etree._Element | None) -> None:
        self._metadata = metadata
        self.issues: list[ImportIssue] = []

    def _invalid(self, field: str, message: str) -> None:
        logger.warning("Invalid manifest metadata field %s: %s", field, message)
        self.issues.append(
            ImportIssue(
                kind=IssueKind.METADATA_INVALID,
                subject=f"{MANIFEST_PATH}#{field}",
                message=message,
            )
        )

    def title(self) -> str:
        if self._metadata is None:
            return ""
        return _text(_child(self._metadata, "title"))

    def read(self) -> tuple[str, dict[str, str | list[str]]]:
        values: dict[str, str | list[str]] = {}
        if self._metadata is None:
            return "", values

        for field in ("content-id", "version", "abstract"):
            text = _text(_child(self._metadata, field))
            if text:
                values[field.replace("-", "_")] = text

        for field in ("created", "revised"):
            element = _child(self._metadata, field)
            if element is None:
                continue
            text = _text(element)
            if _DATE_RE.match(text):
                values[field] = text
            else:
                self._invalid(field, f"Unrecognized date value {text!r}")

        language_element = _child(self._metadata, "language")
        if language_element is not None:
            language = _text(language_element)
            if _LANGUAGE_RE.match(language):
                values["language"] = language
            else:
                self._invalid("language", f"Unrecognized language code {language!r}")

        license_text, license_url = self._license()
        if license_url:
            values["license_url"] = license_url

        authors = self._authors()
        if authors:
            values["authors"] = authors

        subjects = self._list("subjectlist", "subject")
        if subjects:
            values["subjects"] = subjects

        keywords = self._list("keywordlist", "keyword")
        if keywords:
            values["keywords"] = keywords

        return license_text, values

    def _license(self) -> tuple[str, str]:
        assert self._metadata is not None
        element = _child(self._metadata, "license")
        if element is None:
            return "", ""
        url = _attribute(element, "url") or _attribute(element, "href") or ""
        text = _text(element)
        if not url and not text:
            self._invalid("license", "License element has neither text nor url")
            return "", ""
        return text or url, url

    def _persons(self) -> dict[str, str]:
        assert self._metadata is not None
        persons: dict[str, str] = {}
        actors = _child(self._metadata, "actors")
        if actors is None:
            return persons
        for actor in actors:
            user_id = _attribute(actor, "userid")
            if not user_id:
                continue
            full_name = _text(_child(actor, "fullname"))
            if not full_name:
                first = _text(_child(actor, "firstname"))
                last = _text(_child(actor, "surname"))
                full_name = normalize_whitespace(f"{first} {last}")
            persons[user_id] = full_name or user_id
        return persons

    def _authors(self) -> list[str]:
        assert self._metadata is not None
        persons = self._persons()
        authors: list[str] = []

        roles = _child(self._metadata, "roles")
        if roles is not None:
            for role in _children(roles, "role"):
                if (_attribute(role, "type") or "").lower() != "author":
                    continue
                for user_id in _text(role).split():
                    name = persons.get(user_id)
                    if name is None:
                        self._invalid("authors", f"Author role references unknown person {user_id!r}")
                        continue
                    if name not in authors:
                        authors.append(name)

        if authors:
            return authors

        # mdml 0.4 and older list authors directly
        authorlist = _child(self._metadata, "authorlist")
        if authorlist is not None:
            for author in _children(authorlist, "author"):
                name = _text(_child(author, "fullname")) or normalize_whitespace(
                    f"{_text(_child(author, 'firstname'))} {_text(_child(author, 'surname'))}"
                )
                if name and name not in authors:
                    authors.append(name)
        return authors

    def _list(self, container: str, item: str) -> list[str]:
        assert self._metadata is not None
        element = _child(self._metadata, container)
        if element is None:
            return []
        values: list[str] = []
        for child in _children(element, item):
            text = _text(child)
            if not text:
                self._invalid(container, f"Empty {item} entry")
                continue
            values.append(text)
        return values


def _parse_nodes(content: etree._Element) -> list[CollectionNode]:
    nodes: list[CollectionNode] = []
    for element in content:
        name = _local_name(element)
        if name == "subcollection":
            title = _text(_child(element, "title")) or UNTITLED_PART
            inner = _child(element, "content")
            children = _parse_nodes(inner) if inner is not None else []
            nodes.append(Part(title=title, children=children))
        elif name == "module":
            module_id = _attribute(element, "document")
            if not module_id:
                raise ManifestMalformed("Module entry without a document attribute", subject=MANIFEST_PATH)
            if not _MODULE_ID_RE.match(module_id):
                raise ManifestMalformed(f"Invalid module identifier {module_id!r}", subject=MANIFEST_PATH)
            title = _text(_child(element, "title")) or None
            version = _attribute(element, "version-at-this-collection-version") or _attribute(element, "version")
            nodes.append(ModuleReference(module_id=module_id, title=title, version=version or None))
    return nodes


def parse_manifest_bytes(payload: bytes) -> Outcome[Collection]:
    """Parse raw collxml into a Collection plus metadata issues."""

    try:
        root = etree.fromstring(payload, parser=_parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise ManifestMalformed(f"Unparsable collection manifest: {exc}", subject=MANIFEST_PATH) from exc

    if _local_name(root) != "collection":
        raise ManifestMalformed(
            f"Manifest root element is {_local_name(root) or root.tag!r}, expected 'collection'",
            subject=MANIFEST_PATH,
        )

    content = _child(root, "content")
    if content is None:
        raise ManifestMalformed("Manifest has no content element", subject=MANIFEST_PATH)

    nodes = _parse_nodes(content)
    if not nodes:
        raise ManifestMalformed("Manifest declares no parts or modules", subject=MANIFEST_PATH)

    reader = _MetadataReader(_child(root, "metadata"))
    license_text, metadata = reader.read()
    title = reader.title() or UNTITLED_COLLECTION

    collection = Collection(title=title, nodes=nodes, license=license_text, metadata=metadata)
    return Outcome(value=collection, issues=reader.issues)


def parse_manifest(handle: ArchiveHandle) -> Outcome[Collection]:
    """Locate and parse the collection manifest inside an archive."""

    try:
        payload = handle.read_entry(MANIFEST_PATH)
    except EntryNotFound as exc:
        raise ManifestMissing("Archive has no collection.xml", subject=handle.source) from exc

    outcome = parse_manifest_bytes(payload)
    logger.info(
        "Parsed manifest '%s' with %d module reference(s)",
        outcome.value.title,
        len(outcome.value.module_references()),
    )
    return outcome
