"""End-to-end collection import: locate, parse, decode, resolve, assemble."""

from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Iterable

from cnximport.archive import ArchiveHandle, open_archive
from cnximport.assembler import AssemblyPolicy, assemble
from cnximport.assets import AssetResolver
from cnximport.cancellation import CancelToken
from cnximport.config import ImportSettings
from cnximport.decoders.base import ModuleDecoder
from cnximport.errors import RECOVERABLE_ERRORS, CollectionImportError
from cnximport.host import EntitySink, Fetcher, MediaStore
from cnximport.manifest import parse_manifest
from cnximport.models import ImportIssue, ImportResult, Module, ModuleReference, Outcome
from cnximport.module_decoder import decode_module

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _ModuleWork:
    reference: ModuleReference
    module: Module | None = None
    issues: list[ImportIssue] = field(default_factory=list)


def escalate(issues: Iterable[ImportIssue]) -> None:
    """Raise the first issue as the error class of the same kind."""

    first = next(iter(issues), None)
    if first is None:
        return
    logger.error("Strict mode: escalating %s for %s", first.kind.value, first.subject)
    raise RECOVERABLE_ERRORS[first.kind.value](first.message, subject=first.subject)


def _unique_references(references: Iterable[ModuleReference]) -> dict[str, ModuleReference]:
    unique: dict[str, ModuleReference] = {}
    for reference in references:
        unique.setdefault(reference.module_id, reference)
    return unique


def _process_module(
    handle: ArchiveHandle,
    reference: ModuleReference,
    resolver: AssetResolver,
    cancel: CancelToken,
    decoders: list[ModuleDecoder] | None,
) -> Outcome[Module]:
    cancel.raise_if_cancelled(reference.module_id)
    decoded = decode_module(handle, reference, decoders=decoders)
    cancel.raise_if_cancelled(reference.module_id)
    resolved = resolver.resolve(decoded.value)
    return Outcome(value=decoded.value, issues=[*decoded.issues, *resolved.issues])


def _decode_all(
    handle: ArchiveHandle,
    references: dict[str, ModuleReference],
    resolver: AssetResolver,
    *,
    cancel: CancelToken,
    max_workers: int,
    decoders: list[ModuleDecoder] | None,
) -> dict[str, _ModuleWork]:
    work = {module_id: _ModuleWork(reference=reference) for module_id, reference in references.items()}
    if not work:
        return work

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cnximport-module") as executor:
        futures: dict[Future[Outcome[Module]], str] = {
            executor.submit(_process_module, handle, item.reference, resolver, cancel, decoders): module_id
            for module_id, item in work.items()
        }
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = next((future for future in futures if future in done and future.exception() is not None), None)
        if failed is not None:
            cancel.cancel(f"Aborted after fatal error in module {futures[failed]}")
            for future in pending:
                future.cancel()
            raise failed.exception()  # type: ignore[misc]

    for future, module_id in futures.items():
        outcome = future.result()
        work[module_id].module = outcome.value
        work[module_id].issues = list(outcome.issues)
    return work


def run_import(
    source: str | Path,
    timeout: float | None = None,
    strict: bool | None = None,
    *,
    media_store: MediaStore,
    fetch: Fetcher | None = None,
    emit_entities: EntitySink | None = None,
    settings: ImportSettings | None = None,
    cancel: CancelToken | None = None,
    decoders: list[ModuleDecoder] | None = None,
) -> ImportResult:
    """Import one collection archive and hand the ordered entities to the host.

    ``timeout`` bounds the remote fetch and every media persistence call;
    it defaults to ``settings.fetch_timeout_seconds``. ``strict`` defaults to
    ``settings.strict``. Fatal failures raise a ``FatalImportError`` subclass
    and emit nothing; with ``strict`` the first warning in document order is
    raised as the error of the same kind instead.
    """

    settings = settings or ImportSettings()
    effective_timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
    effective_strict = settings.strict if strict is None else strict
    token = cancel or CancelToken()

    logger.info("Starting import of %s (strict=%s)", source, effective_strict)
    try:
        handle = open_archive(
            source,
            timeout=effective_timeout,
            fetch=fetch,
            cancel=token,
            max_entries=settings.max_archive_entries,
            max_uncompressed_bytes=settings.max_archive_uncompressed_bytes,
        )
    except CollectionImportError as exc:
        logger.error("Import of %s failed while opening archive: %s", source, exc)
        raise

    with handle:
        manifest = parse_manifest(handle)
        collection = manifest.value
        if effective_strict:
            escalate(manifest.issues)
        token.raise_if_cancelled(str(source))

        references = _unique_references(collection.module_references())
        logger.info("Collection '%s' references %d module(s)", collection.title, len(references))

        with AssetResolver(
            handle,
            media_store,
            max_workers=settings.max_asset_workers,
            timeout=effective_timeout,
            cancel=token,
        ) as resolver:
            work = _decode_all(
                handle,
                references,
                resolver,
                cancel=token,
                max_workers=settings.max_module_workers,
                decoders=decoders,
            )

    issues: list[ImportIssue] = list(manifest.issues)
    for reference in collection.module_references():
        item = work[reference.module_id]
        if item.issues:
            issues.extend(item.issues)
            # repeated references share one decode; report its issues once
            item.issues = []

    if effective_strict:
        escalate(issues)
    token.raise_if_cancelled(str(source))

    result = assemble(
        collection,
        {module_id: item.module for module_id, item in work.items() if item.module is not None},
        issues=issues,
        policy=AssemblyPolicy(
            collapse_single_child_parts=settings.collapse_single_child_parts,
            content_base_url=settings.content_base_url,
        ),
    )

    if emit_entities is not None:
        emit_entities(result)
    logger.info(
        "Imported '%s': %d entities, %d warning(s)",
        result.title,
        len(result.entities),
        len(result.warnings),
    )
    return result
