"""Error taxonomy for collection imports.

Fatal errors abort the run and are raised. Recoverable errors are recorded as
``ImportIssue`` values by the stage that hits them; the exception class of the
same kind is only raised when strict mode escalates the issue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(slots=True, eq=False)
class CollectionImportError(Exception):
    """Base domain error for every import failure."""

    kind: ClassVar[str] = "ImportError"

    message: str
    subject: str | None = None

    def __str__(self) -> str:
        if self.subject:
            return f"{self.message} (kind={self.kind}, subject={self.subject})"
        return f"{self.message} (kind={self.kind})"


@dataclass(slots=True, eq=False)
class FatalImportError(CollectionImportError):
    """Failure that aborts the whole import with no partial output."""

    kind: ClassVar[str] = "Fatal"


@dataclass(slots=True, eq=False)
class SourceUnavailable(FatalImportError):
    kind: ClassVar[str] = "SourceUnavailable"


@dataclass(slots=True, eq=False)
class CorruptArchive(FatalImportError):
    kind: ClassVar[str] = "CorruptArchive"


@dataclass(slots=True, eq=False)
class ManifestMissing(FatalImportError):
    kind: ClassVar[str] = "ManifestMissing"


@dataclass(slots=True, eq=False)
class ManifestMalformed(FatalImportError):
    kind: ClassVar[str] = "ManifestMalformed"


@dataclass(slots=True, eq=False)
class ImportCancelled(FatalImportError):
    kind: ClassVar[str] = "ImportCancelled"


@dataclass(slots=True, eq=False)
class EntryNotFound(CollectionImportError):
    """Requested path does not exist inside the archive."""

    kind: ClassVar[str] = "EntryNotFound"


@dataclass(slots=True, eq=False)
class FetchTimeout(CollectionImportError):
    kind: ClassVar[str] = "Timeout"


@dataclass(slots=True, eq=False)
class FetchNetworkError(CollectionImportError):
    kind: ClassVar[str] = "NetworkError"


@dataclass(slots=True, eq=False)
class HostRejected(CollectionImportError):
    """Raised by the host when it refuses the emitted entities."""

    kind: ClassVar[str] = "HostRejected"


@dataclass(slots=True, eq=False)
class RecoverableImportError(CollectionImportError):
    """Per-unit failure; only raised when strict mode escalates a warning."""

    kind: ClassVar[str] = "Recoverable"


@dataclass(slots=True, eq=False)
class AssetMissing(RecoverableImportError):
    kind: ClassVar[str] = "AssetMissing"


@dataclass(slots=True, eq=False)
class ModuleParseError(RecoverableImportError):
    kind: ClassVar[str] = "ModuleParseError"


@dataclass(slots=True, eq=False)
class ModuleMissing(RecoverableImportError):
    kind: ClassVar[str] = "ModuleMissing"


@dataclass(slots=True, eq=False)
class EncodingError(RecoverableImportError):
    kind: ClassVar[str] = "EncodingError"


@dataclass(slots=True, eq=False)
class StorageError(RecoverableImportError):
    """Host media store failure; also raised by hosts from ``persist_media``."""

    kind: ClassVar[str] = "StorageError"


@dataclass(slots=True, eq=False)
class EmptyModule(RecoverableImportError):
    kind: ClassVar[str] = "EmptyModule"


@dataclass(slots=True, eq=False)
class MetadataInvalid(RecoverableImportError):
    kind: ClassVar[str] = "MetadataInvalid"


RECOVERABLE_ERRORS: dict[str, type[RecoverableImportError]] = {
    cls.kind: cls
    for cls in (
        AssetMissing,
        ModuleParseError,
        ModuleMissing,
        EncodingError,
        StorageError,
        EmptyModule,
        MetadataInvalid,
    )
}
