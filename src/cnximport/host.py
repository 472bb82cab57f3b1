"""Host collaborator contracts and reference implementations.

The importer never persists anything itself. It calls three collaborators:

- ``fetch(url, timeout)`` to download a remote collection archive,
- ``persist_media(data, media_kind)`` to store an embedded asset and return a
  durable identifier,
- ``emit_entities(result)`` to hand the finished book to the host.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
from pathlib import Path
import threading
from typing import Callable, Protocol, runtime_checkable

import httpx

from cnximport.errors import FetchNetworkError, FetchTimeout, StorageError
from cnximport.models import ImportResult, MediaKind

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, float], bytes]
EntitySink = Callable[[ImportResult], None]

_MAX_REDIRECTS = 5


@runtime_checkable
class MediaStore(Protocol):
    """Protocol every host media library adapter must implement."""

    def persist_media(self, data: bytes, media_kind: MediaKind, *, filename: str | None = None) -> str:
        """Store bytes and return a durable host identifier."""


def http_fetch(url: str, timeout: float) -> bytes:
    """Blocking download used for URL sources."""

    try:
        with httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 30.0)),
            follow_redirects=True,
            max_redirects=_MAX_REDIRECTS,
        ) as client:
            response = client.get(url)
            response.raise_for_status()
            return response.content
    except httpx.TimeoutException as exc:
        raise FetchTimeout(f"Fetch timed out after {timeout:g}s", subject=url) from exc
    except httpx.HTTPStatusError as exc:
        raise FetchNetworkError(f"Fetch returned HTTP {exc.response.status_code}", subject=url) from exc
    except httpx.HTTPError as exc:
        raise FetchNetworkError(f"Fetch failed: {exc}", subject=url) from exc


def _suffix_for(filename: str | None, media_kind: MediaKind) -> str:
    if filename:
        suffix = Path(filename).suffix.lower()
        if suffix:
            return suffix
    return ".png" if media_kind is MediaKind.IMAGE else ".bin"


class DirectoryMediaStore:
    """Write assets into a directory named by content hash.

    Identical bytes map to the same file, so re-importing a collection does not
    multiply media entries.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def persist_media(self, data: bytes, media_kind: MediaKind, *, filename: str | None = None) -> str:
        digest = hashlib.sha256(data).hexdigest()
        name = f"{media_kind.value}-{digest[:32]}{_suffix_for(filename, media_kind)}"
        target = self._root / name
        with self._lock:
            try:
                self._root.mkdir(parents=True, exist_ok=True)
                if not target.exists():
                    target.write_bytes(data)
            except OSError as exc:
                raise StorageError(f"Failed to write media file: {exc}", subject=filename) from exc
        logger.debug("Stored %s as %s", filename or "asset", name)
        return name


class InMemoryMediaStore:
    """Keep persisted assets in memory under content-hash identifiers."""

    def __init__(self, prefix: str = "media") -> None:
        self._prefix = prefix
        self._lock = threading.Lock()
        self._items: dict[str, tuple[bytes, MediaKind, str | None]] = {}
        self.calls = 0

    @property
    def items(self) -> dict[str, tuple[bytes, MediaKind, str | None]]:
        return dict(self._items)

    def persist_media(self, data: bytes, media_kind: MediaKind, *, filename: str | None = None) -> str:
        identifier = f"{self._prefix}-{hashlib.sha256(data).hexdigest()[:16]}"
        with self._lock:
            self.calls += 1
            self._items.setdefault(identifier, (data, media_kind, filename))
        return identifier


def guess_media_kind(path: str, declared_mime: str | None = None) -> MediaKind:
    """Classify an asset as image or other from its mime type or extension."""

    mime = declared_mime or mimetypes.guess_type(path)[0]
    if mime and mime.startswith("image/"):
        return MediaKind.IMAGE
    return MediaKind.OTHER
