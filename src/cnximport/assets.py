"""Asset resolver: persist embedded media once and rewrite references."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
import html
import logging
import posixpath
import re
import threading
from typing import Iterable

from cnximport.archive import ArchiveHandle
from cnximport.cancellation import CancelToken, run_with_deadline
from cnximport.errors import EntryNotFound, FatalImportError, StorageError
from cnximport.host import MediaStore
from cnximport.models import (
    ASSET_HREF_PREFIX,
    MISSING_ASSET_PREFIX,
    AssetReference,
    ImportIssue,
    IssueKind,
    MediaKind,
    Module,
    Outcome,
)

logger = logging.getLogger(__name__)

_WAIT_INTERVAL_SECONDS = 0.05
_ASSET_ATTR_RE = re.compile(r'(?P<attr>href|src)="' + re.escape(ASSET_HREF_PREFIX) + r'(?P<path>[^"]*)"')


def placeholder_identifier(path: str) -> str:
    return f"{MISSING_ASSET_PREFIX}{path}"


@dataclass(frozen=True, slots=True)
class _Resolution:
    identifier: str
    failure: IssueKind | None = None
    message: str = ""


class AssetResolver:
    """Resolve archive asset paths to host media identifiers.

    Every distinct archive path is read and persisted at most once per run;
    concurrent requests for the same path share one in-flight future.
    """

    def __init__(
        self,
        handle: ArchiveHandle,
        media_store: MediaStore,
        *,
        max_workers: int = 4,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._handle = handle
        self._store = media_store
        self._timeout = timeout
        self._cancel = cancel
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cnximport-asset")
        self._inflight: dict[str, Future[_Resolution]] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "AssetResolver":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def resolve(self, module: Module) -> Outcome[dict[str, str]]:
        """Resolve a module's asset references and rewrite its blocks in place."""

        outcome = self.resolve_references(module.module_id, module.assets)
        rewrite_references(module, outcome.value)
        return outcome

    def resolve_references(
        self,
        module_id: str,
        references: Iterable[AssetReference],
    ) -> Outcome[dict[str, str]]:
        """Return a mapping from original path to host identifier."""

        kinds: dict[str, MediaKind] = {}
        for reference in references:
            kinds.setdefault(reference.original_path, reference.media_kind)

        futures = {path: self._submit(path, media_kind) for path, media_kind in kinds.items()}

        mapping: dict[str, str] = {}
        issues: list[ImportIssue] = []
        for path, future in futures.items():
            resolution = self._await(future, path)
            mapping[path] = resolution.identifier
            if resolution.failure is not None:
                logger.warning("Asset %s in module %s degraded: %s", path, module_id, resolution.message)
                issues.append(
                    ImportIssue(
                        kind=resolution.failure,
                        subject=f"{module_id}:{path}",
                        message=resolution.message,
                        module_id=module_id,
                        asset_path=path,
                    )
                )
        return Outcome(value=mapping, issues=issues)

    def _submit(self, path: str, media_kind: MediaKind) -> Future[_Resolution]:
        with self._lock:
            future = self._inflight.get(path)
            if future is None:
                future = self._executor.submit(self._fetch_and_persist, path, media_kind)
                self._inflight[path] = future
            return future

    def _await(self, future: Future[_Resolution], path: str) -> _Resolution:
        while True:
            if self._cancel is not None:
                self._cancel.raise_if_cancelled(path)
            done, _pending = wait([future], timeout=_WAIT_INTERVAL_SECONDS)
            if done:
                return future.result()

    def _fetch_and_persist(self, path: str, media_kind: MediaKind) -> _Resolution:
        if self._cancel is not None:
            self._cancel.raise_if_cancelled(path)

        try:
            data = self._handle.read_entry(path)
        except EntryNotFound:
            return _Resolution(
                identifier=placeholder_identifier(path),
                failure=IssueKind.ASSET_MISSING,
                message="Asset not found in archive",
            )

        filename = posixpath.basename(path)
        try:
            if self._timeout is None and self._cancel is None:
                identifier = self._store.persist_media(data, media_kind, filename=filename)
            else:
                identifier = run_with_deadline(
                    lambda: self._store.persist_media(data, media_kind, filename=filename),
                    timeout=self._timeout,
                    cancel=self._cancel,
                    subject=path,
                )
        except StorageError as exc:
            return _Resolution(
                identifier=placeholder_identifier(path),
                failure=IssueKind.STORAGE_ERROR,
                message=f"Media store rejected asset: {exc.message}",
            )
        except TimeoutError:
            return _Resolution(
                identifier=placeholder_identifier(path),
                failure=IssueKind.STORAGE_ERROR,
                message=f"Media store did not answer within {self._timeout:g}s",
            )
        except FatalImportError:
            raise
        except Exception as exc:
            logger.exception("Media store failed on asset %s", path)
            return _Resolution(
                identifier=placeholder_identifier(path),
                failure=IssueKind.STORAGE_ERROR,
                message=f"Media store failed: {exc}",
            )

        if not isinstance(identifier, str) or not identifier:
            return _Resolution(
                identifier=placeholder_identifier(path),
                failure=IssueKind.STORAGE_ERROR,
                message="Media store returned an empty identifier",
            )
        logger.debug("Persisted asset %s as %s", path, identifier)
        return _Resolution(identifier=identifier)


def rewrite_references(module: Module, mapping: dict[str, str]) -> None:
    """Replace original asset paths with resolved identifiers in every block."""

    if not mapping:
        return

    def _replace(match: re.Match[str]) -> str:
        identifier = mapping.get(html.unescape(match.group("path")))
        if identifier is None:
            return match.group(0)
        return f'{match.group("attr")}="{html.escape(identifier)}"'

    for block in module.blocks:
        if block.src is not None and block.src in mapping:
            block.src = mapping[block.src]
        if block.html and ASSET_HREF_PREFIX in block.html:
            block.html = _ASSET_ATTR_RE.sub(_replace, block.html)
