"""Routing entrypoint for module decoders with per-module error recovery."""

from __future__ import annotations

import logging

from cnximport.archive import ArchiveHandle
from cnximport.decoders import build_default_decoders
from cnximport.decoders.base import DocumentParseError, ModuleDecoder
from cnximport.errors import EntryNotFound, FatalImportError
from cnximport.models import BlockKind, ContentBlock, ImportIssue, IssueKind, Module, ModuleReference, Outcome

logger = logging.getLogger(__name__)

REPLACEMENT_CHARACTER = "\ufffd"


def placeholder_module(reference: ModuleReference, reason: str) -> Module:
    return Module(
        module_id=reference.module_id,
        title=reference.title or reference.module_id,
        blocks=[
            ContentBlock(
                block_id=f"{reference.module_id}-placeholder",
                kind=BlockKind.PARAGRAPH,
                text=f"This section could not be imported ({reason}).",
            )
        ],
    )


def _issue(kind: IssueKind, module_id: str, message: str) -> ImportIssue:
    logger.warning("Module %s degraded (%s): %s", module_id, kind.value, message)
    return ImportIssue(kind=kind, subject=module_id, message=message, module_id=module_id)


def sanitize_utf8(raw: bytes) -> tuple[bytes, int | None]:
    """Return UTF-8 bytes with undecodable ranges replaced.

    The second element is the byte offset of the first bad range, or None when
    the payload was already valid UTF-8.
    """

    try:
        raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        repaired = raw.decode("utf-8", errors="replace")
        return repaired.encode("utf-8"), exc.start
    return raw, None


def decode_module(
    handle: ArchiveHandle,
    reference: ModuleReference,
    *,
    decoders: list[ModuleDecoder] | None = None,
) -> Outcome[Module]:
    """Decode one module; per-module failures degrade to a placeholder.

    Every decoder that finds a document is tried in order, so an unparsable
    ``index.cnxml`` falls back to the rendered ``index.cnxml.html``.
    Archive-level corruption still propagates as ``CorruptArchive``.
    """

    module_id = reference.module_id
    candidates = decoders if decoders is not None else build_default_decoders()

    located: list[tuple[ModuleDecoder, str]] = []
    for decoder in candidates:
        document_path = decoder.locate(handle, module_id)
        if document_path is not None:
            located.append((decoder, document_path))
    if not located:
        message = "Module document not found in archive"
        return Outcome(
            value=placeholder_module(reference, "missing from archive"),
            issues=[_issue(IssueKind.MODULE_MISSING, module_id, message)],
        )

    failures: list[str] = []
    encoding_issues: list[ImportIssue] = []
    for decoder, document_path in located:
        try:
            raw = handle.read_entry(document_path)
        except EntryNotFound:
            logger.warning("Module %s document %s vanished from archive", module_id, document_path)
            continue

        payload, bad_offset = sanitize_utf8(raw)
        encoding_issue: ImportIssue | None = None
        if bad_offset is not None:
            encoding_issue = _issue(
                IssueKind.ENCODING_ERROR,
                module_id,
                f"Invalid UTF-8 in {document_path} at byte {bad_offset}; "
                f"undecodable bytes replaced with {REPLACEMENT_CHARACTER!r}",
            )
            encoding_issues.append(encoding_issue)

        try:
            outcome = decoder.decode(payload, module_id=module_id, document_path=document_path, title=reference.title)
        except DocumentParseError as exc:
            logger.warning("Module %s: %s did not parse: %s", module_id, document_path, exc)
            failures.append(str(exc))
            continue
        except FatalImportError:
            raise
        except Exception as exc:
            logger.exception("Module %s: decoder failed on %s", module_id, document_path)
            failures.append(f"{type(exc).__name__}: {exc}")
            continue

        if failures:
            logger.warning("Module %s decoded from fallback document %s", module_id, document_path)
        issues = [encoding_issue] if encoding_issue is not None else []
        issues.extend(outcome.issues)
        module = outcome.value
        if module.is_empty:
            issues.append(_issue(IssueKind.EMPTY_MODULE, module_id, f"Module document {document_path} has no content"))

        logger.debug(
            "Decoded module %s: %d block(s), %d asset reference(s)",
            module_id,
            len(module.blocks),
            len(module.assets),
        )
        return Outcome(value=module, issues=issues)

    if not failures:
        return Outcome(
            value=placeholder_module(reference, "missing from archive"),
            issues=[_issue(IssueKind.MODULE_MISSING, module_id, "Module document vanished from archive")],
        )
    issues = [*encoding_issues, _issue(IssueKind.MODULE_PARSE_ERROR, module_id, "; ".join(failures))]
    return Outcome(value=placeholder_module(reference, "unparsable document"), issues=issues)
