"""Canonical data structures shared by every import stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Iterator, TypeVar, Union

T = TypeVar("T")

# Link targets left in block HTML for later rewriting.
MODULE_HREF_PREFIX = "cnx:"
ASSET_HREF_PREFIX = "cnx-asset:"
MISSING_ASSET_PREFIX = "asset-missing:"


class BlockKind(str, Enum):
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    LIST = "list"
    TABLE = "table"
    MATH = "math"
    FIGURE = "figure"
    RAW_EMBED = "raw-embed"


class MediaKind(str, Enum):
    IMAGE = "image"
    OTHER = "other"


class EntityKind(str, Enum):
    PART_MARKER = "part-marker"
    CHAPTER = "chapter"
    FRONT_MATTER = "front-matter"
    BACK_MATTER = "back-matter"


class IssueKind(str, Enum):
    """Recoverable failure kinds; values match the error class ``kind``."""

    ASSET_MISSING = "AssetMissing"
    MODULE_PARSE_ERROR = "ModuleParseError"
    MODULE_MISSING = "ModuleMissing"
    ENCODING_ERROR = "EncodingError"
    STORAGE_ERROR = "StorageError"
    EMPTY_MODULE = "EmptyModule"
    METADATA_INVALID = "MetadataInvalid"


@dataclass(slots=True)
class ModuleReference:
    """Leaf of the collection tree pointing at a module inside the archive."""

    module_id: str
    title: str | None = None
    version: str | None = None


@dataclass(slots=True)
class Part:
    """Subcollection owning an ordered sequence of child nodes."""

    title: str
    children: list[CollectionNode] = field(default_factory=list)


CollectionNode = Union[Part, ModuleReference]


def iter_module_references(nodes: list[CollectionNode]) -> Iterator[ModuleReference]:
    """Yield module references depth-first in declared document order."""

    for node in nodes:
        if isinstance(node, Part):
            yield from iter_module_references(node.children)
        else:
            yield node


@dataclass(slots=True)
class Collection:
    """Parsed collection manifest."""

    title: str
    nodes: list[CollectionNode]
    license: str = ""
    metadata: dict[str, str | list[str]] = field(default_factory=dict)

    def module_references(self) -> list[ModuleReference]:
        return list(iter_module_references(self.nodes))


@dataclass(slots=True)
class ContentBlock:
    """A normalized content unit in document order.

    Only the fields relevant to ``kind`` are populated: ``level`` for
    headings, ``items``/``ordered`` for lists, ``rows`` for tables, ``markup``
    for math and raw embeds, ``src``/``caption``/``media_kind`` for figures
    and embedded media. ``html`` carries inline markup for text blocks.
    """

    block_id: str
    kind: BlockKind
    text: str = ""
    html: str | None = None
    level: int | None = None
    items: list[str] = field(default_factory=list)
    ordered: bool = False
    rows: list[list[str]] = field(default_factory=list)
    markup: str | None = None
    display: str | None = None
    src: str | None = None
    caption: str | None = None
    media_kind: MediaKind | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"id": self.block_id, "kind": self.kind.value}
        if self.text:
            payload["text"] = self.text
        if self.html is not None:
            payload["html"] = self.html
        if self.level is not None:
            payload["level"] = self.level
        if self.kind is BlockKind.LIST:
            payload["ordered"] = self.ordered
            payload["items"] = list(self.items)
        if self.rows:
            payload["rows"] = [list(row) for row in self.rows]
        if self.markup is not None:
            payload["markup"] = self.markup
        if self.display is not None:
            payload["display"] = self.display
        if self.src is not None:
            payload["src"] = self.src
        if self.caption:
            payload["caption"] = self.caption
        if self.media_kind is not None:
            payload["media_kind"] = self.media_kind.value
        return payload


@dataclass(frozen=True, slots=True)
class AssetReference:
    """Embedded media discovered while decoding a module."""

    original_path: str
    block_id: str
    media_kind: MediaKind = MediaKind.IMAGE


@dataclass(slots=True)
class Module:
    """Decoded leaf content of one collection module."""

    module_id: str
    title: str
    blocks: list[ContentBlock] = field(default_factory=list)
    assets: list[AssetReference] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.blocks


@dataclass(frozen=True, slots=True)
class ImportIssue:
    """Non-fatal degradation recorded during an import."""

    kind: IssueKind
    subject: str
    message: str
    module_id: str | None = None
    asset_path: str | None = None

    @property
    def key(self) -> tuple[IssueKind, str]:
        return (self.kind, self.subject)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "subject": self.subject,
            "message": self.message,
            "module_id": self.module_id,
            "asset_path": self.asset_path,
        }


@dataclass(slots=True)
class Outcome(Generic[T]):
    """A stage result: the value, possibly degraded, plus recorded issues."""

    value: T
    issues: list[ImportIssue] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.issues)


@dataclass(slots=True)
class ImportEntity:
    """Host-ready book entity."""

    kind: EntityKind
    title: str
    slug: str
    depth: int = 0
    module_id: str | None = None
    blocks: list[ContentBlock] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "slug": self.slug,
            "depth": self.depth,
            "module_id": self.module_id,
            "blocks": [block.to_dict() for block in self.blocks],
        }


@dataclass(slots=True)
class ImportResult:
    """Ordered host entities plus every warning collected across the run."""

    title: str
    entities: list[ImportEntity] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)
    license: str = ""
    metadata: dict[str, str | list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "title": self.title,
            "license": self.license,
            "metadata": {key: self.metadata[key] for key in sorted(self.metadata)},
            "entities": [entity.to_dict() for entity in self.entities],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }
