"""Shared decoder contract for per-format module documents."""

from __future__ import annotations

import posixpath
from typing import Protocol, runtime_checkable

from cnximport.archive import ArchiveHandle, normalize_entry_path
from cnximport.models import Module, Outcome

EXTERNAL_PREFIXES = ("http://", "https://", "//", "data:", "mailto:")


@runtime_checkable
class ModuleDecoder(Protocol):
    """Protocol that every module document decoder must implement."""

    def locate(self, handle: ArchiveHandle, module_id: str) -> str | None:
        """Return the archive path of the module document this decoder reads."""

    def decode(
        self,
        payload: bytes,
        *,
        module_id: str,
        document_path: str,
        title: str | None = None,
    ) -> Outcome[Module]:
        """Decode UTF-8 document bytes into content blocks and asset references."""


class DocumentParseError(ValueError):
    """Raised by decoders when a module document cannot be parsed at all."""


class BlockIds:
    """Allocate unique, deterministic block identifiers within one module."""

    def __init__(self, module_id: str) -> None:
        self._module_id = module_id
        self._counter = 0
        self._used: set[str] = set()

    def next(self, preferred: str | None = None) -> str:
        if preferred and preferred not in self._used:
            self._used.add(preferred)
            return preferred
        while True:
            self._counter += 1
            candidate = f"{self._module_id}-b{self._counter}"
            if candidate not in self._used:
                self._used.add(candidate)
                return candidate


def is_external(src: str) -> bool:
    return src.strip().lower().startswith(EXTERNAL_PREFIXES)


def resolve_asset_path(document_path: str, src: str) -> str:
    """Resolve a document-relative asset reference to an archive path."""

    module_dir = posixpath.dirname(document_path)
    cleaned = src.strip().split("#", 1)[0].split("?", 1)[0]
    if cleaned.startswith("/"):
        return normalize_entry_path(cleaned)
    return normalize_entry_path(posixpath.join(module_dir, cleaned))


def first_existing(handle: ArchiveHandle, candidates: list[str]) -> str | None:
    for candidate in candidates:
        if handle.has_entry(candidate):
            return candidate
    return None
