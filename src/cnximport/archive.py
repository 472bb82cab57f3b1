"""Archive locator: turn a local path or URL into a navigable ZIP handle."""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path
import posixpath
import threading
from typing import BinaryIO, Iterator
from zipfile import BadZipFile, ZipFile, ZipInfo
import zlib

from cnximport.cancellation import CancelToken, run_with_deadline
from cnximport.config import DEFAULT_MAX_ARCHIVE_BYTES, DEFAULT_MAX_ARCHIVE_ENTRIES
from cnximport.errors import (
    CorruptArchive,
    EntryNotFound,
    FetchNetworkError,
    FetchTimeout,
    SourceUnavailable,
)
from cnximport.host import Fetcher, http_fetch

logger = logging.getLogger(__name__)

_ZIP_MAGIC = b"PK\x03\x04"
_EMPTY_ZIP_MAGIC = b"PK\x05\x06"


def is_url(source: str) -> bool:
    lowered = source.strip().lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def normalize_entry_path(path: str) -> str:
    """Normalize an archive-relative path with POSIX semantics."""

    cleaned = path.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.lstrip("/")
    if not cleaned:
        return ""
    normalized = posixpath.normpath(cleaned)
    return "" if normalized == "." else normalized


def _check_entry_name(name: str) -> str | None:
    if name.startswith("/") or name.startswith("\\"):
        return f"Absolute path in archive: {name}"
    if ".." in name.replace("\\", "/").split("/"):
        return f"Path traversal in archive: {name}"
    if len(name) > 1 and name[1] == ":":
        return f"Drive-qualified path in archive: {name}"
    return None


_MANIFEST_NAME = "collection.xml"


def _is_resource_fork(name: str) -> bool:
    head = name.split("/", 1)[0]
    return head == "__MACOSX" or posixpath.basename(name).startswith("._")


def _collection_root(names: list[str]) -> str:
    """Return the directory wrapping ``collection.xml`` ('' when it sits at the top).

    Only a single top-level directory holding the manifest counts as a
    wrapper; module folders are never stripped.
    """

    if _MANIFEST_NAME in names:
        return ""
    wrappers = {
        name[: -len(_MANIFEST_NAME)]
        for name in names
        if name.endswith("/" + _MANIFEST_NAME) and name.count("/") == 1
    }
    return wrappers.pop() if len(wrappers) == 1 else ""


class ArchiveHandle:
    """Decompressed view over a collection ZIP.

    Entry paths are exposed relative to the directory holding
    ``collection.xml``, which OpenStax offline ZIPs use to wrap the whole
    collection. macOS resource-fork entries are ignored.
    """

    def __init__(
        self,
        data: bytes,
        *,
        source: str = "<memory>",
        max_entries: int = DEFAULT_MAX_ARCHIVE_ENTRIES,
        max_uncompressed_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
    ) -> None:
        self._source = source
        if not (data.startswith(_ZIP_MAGIC) or data.startswith(_EMPTY_ZIP_MAGIC)):
            raise CorruptArchive("Source is not a ZIP archive", subject=source)
        try:
            self._zip = ZipFile(BytesIO(data), "r")
        except (BadZipFile, OSError, ValueError) as exc:
            raise CorruptArchive(f"Invalid ZIP: {exc}", subject=source) from exc

        try:
            infos = self._zip.infolist()
            self._check_safety(infos, max_entries=max_entries, max_uncompressed_bytes=max_uncompressed_bytes)
        except CorruptArchive:
            self._zip.close()
            raise

        file_infos = [info for info in infos if not info.is_dir() and not _is_resource_fork(info.filename)]
        self._root = _collection_root([info.filename for info in file_infos])
        self._entries: dict[str, ZipInfo] = {}
        for info in file_infos:
            relative = normalize_entry_path(info.filename[len(self._root):])
            if relative and relative not in self._entries:
                self._entries[relative] = info
        self._lock = threading.Lock()

    def _check_safety(self, infos: list[ZipInfo], *, max_entries: int, max_uncompressed_bytes: int) -> None:
        if len(infos) > max_entries:
            raise CorruptArchive(
                f"Archive has {len(infos)} entries (limit {max_entries})",
                subject=self._source,
            )

        total_uncompressed = 0
        for info in infos:
            problem = _check_entry_name(info.filename)
            if problem is not None:
                raise CorruptArchive(problem, subject=self._source)
            total_uncompressed += info.file_size
            if total_uncompressed > max_uncompressed_bytes:
                raise CorruptArchive(
                    f"Archive expands beyond {max_uncompressed_bytes} bytes",
                    subject=self._source,
                )

    @property
    def source(self) -> str:
        return self._source

    @property
    def root(self) -> str:
        """Wrapper directory stripped from entry paths ('' when none)."""

        return self._root

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def list_entries(self) -> Iterator[str]:
        """Yield root-relative file paths in archive order.

        Each call starts a fresh iteration.
        """

        for name in tuple(self._entries):
            yield name

    def has_entry(self, path: str) -> bool:
        return normalize_entry_path(path) in self._entries

    def read_entry(self, path: str) -> bytes:
        key = normalize_entry_path(path)
        info = self._entries.get(key)
        if info is None:
            raise EntryNotFound("Archive entry not found", subject=key or path)

        with self._lock:
            try:
                return self._zip.read(info)
            except (BadZipFile, zlib.error, EOFError, OSError) as exc:
                raise CorruptArchive(f"Failed to decompress entry: {exc}", subject=key) from exc

    def open_entry(self, path: str) -> BinaryIO:
        return BytesIO(self.read_entry(path))

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _read_local(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise SourceUnavailable(f"Failed to read source file: {exc}", subject=str(path)) from exc


def _fetch_remote(url: str, *, timeout: float, fetch: Fetcher, cancel: CancelToken | None) -> bytes:
    try:
        return run_with_deadline(lambda: fetch(url, timeout), timeout=timeout, cancel=cancel, subject=url)
    except (FetchTimeout, TimeoutError) as exc:
        raise SourceUnavailable(f"Timed out fetching collection after {timeout:g}s", subject=url) from exc
    except (FetchNetworkError, OSError) as exc:
        raise SourceUnavailable(f"Failed to fetch collection: {exc}", subject=url) from exc


def open_archive(
    source: str | Path,
    *,
    timeout: float,
    fetch: Fetcher | None = None,
    cancel: CancelToken | None = None,
    max_entries: int = DEFAULT_MAX_ARCHIVE_ENTRIES,
    max_uncompressed_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
) -> ArchiveHandle:
    """Open a collection archive from a local path or a remote URL."""

    if timeout <= 0:
        raise ValueError("timeout must be positive")

    source_text = str(source)
    if isinstance(source, str) and is_url(source):
        logger.info("Fetching collection archive from %s (timeout %.0fs)", source, timeout)
        data = _fetch_remote(source, timeout=timeout, fetch=fetch or http_fetch, cancel=cancel)
    else:
        data = _read_local(Path(source))

    if cancel is not None:
        cancel.raise_if_cancelled(source_text)

    handle = ArchiveHandle(
        data,
        source=source_text,
        max_entries=max_entries,
        max_uncompressed_bytes=max_uncompressed_bytes,
    )
    logger.info("Opened archive %s with %d entries", source_text, handle.entry_count)
    return handle
