"""Runtime configuration for collection imports."""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Mapping


DEFAULT_FETCH_TIMEOUT_SECONDS = 5400.0
DEFAULT_MAX_MODULE_WORKERS = 8
DEFAULT_MAX_ASSET_WORKERS = 4
DEFAULT_MAX_ARCHIVE_ENTRIES = 20_000
DEFAULT_MAX_ARCHIVE_BYTES = 2 * 1024 * 1024 * 1024
DEFAULT_CONTENT_BASE_URL = "https://cnx.org/content"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_positive_int(*, name: str, raw_value: str, minimum: int = 1) -> int:
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_positive_float(*, name: str, raw_value: str, minimum: float = 0.001) -> float:
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_bool(*, name: str, raw_value: str) -> bool:
    lowered = raw_value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag")


@dataclass(frozen=True, slots=True)
class ImportSettings:
    """Validated import settings."""

    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    max_module_workers: int = DEFAULT_MAX_MODULE_WORKERS
    max_asset_workers: int = DEFAULT_MAX_ASSET_WORKERS
    strict: bool = False
    collapse_single_child_parts: bool = False
    max_archive_entries: int = DEFAULT_MAX_ARCHIVE_ENTRIES
    max_archive_uncompressed_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES
    content_base_url: str = DEFAULT_CONTENT_BASE_URL

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ImportSettings":
        source: Mapping[str, str] = os.environ if environ is None else environ

        timeout_raw = source.get("CNX_FETCH_TIMEOUT_SECONDS", str(DEFAULT_FETCH_TIMEOUT_SECONDS)).strip()
        module_workers_raw = source.get("CNX_MAX_MODULE_WORKERS", str(DEFAULT_MAX_MODULE_WORKERS)).strip()
        asset_workers_raw = source.get("CNX_MAX_ASSET_WORKERS", str(DEFAULT_MAX_ASSET_WORKERS)).strip()
        entries_raw = source.get("CNX_MAX_ARCHIVE_ENTRIES", str(DEFAULT_MAX_ARCHIVE_ENTRIES)).strip()
        bytes_raw = source.get("CNX_MAX_ARCHIVE_BYTES", str(DEFAULT_MAX_ARCHIVE_BYTES)).strip()
        base_url = source.get("CNX_CONTENT_BASE_URL", DEFAULT_CONTENT_BASE_URL).strip()

        if not timeout_raw:
            raise ValueError("CNX_FETCH_TIMEOUT_SECONDS cannot be empty")
        if not base_url:
            raise ValueError("CNX_CONTENT_BASE_URL cannot be empty")
        if not (base_url.startswith("http://") or base_url.startswith("https://")):
            raise ValueError("CNX_CONTENT_BASE_URL must start with http:// or https://")

        return cls(
            fetch_timeout_seconds=_parse_positive_float(
                name="CNX_FETCH_TIMEOUT_SECONDS",
                raw_value=timeout_raw,
                minimum=0.1,
            ),
            max_module_workers=_parse_positive_int(name="CNX_MAX_MODULE_WORKERS", raw_value=module_workers_raw),
            max_asset_workers=_parse_positive_int(name="CNX_MAX_ASSET_WORKERS", raw_value=asset_workers_raw),
            strict=_parse_bool(name="CNX_STRICT", raw_value=source.get("CNX_STRICT", "")),
            collapse_single_child_parts=_parse_bool(
                name="CNX_COLLAPSE_SINGLE_CHILD_PARTS",
                raw_value=source.get("CNX_COLLAPSE_SINGLE_CHILD_PARTS", ""),
            ),
            max_archive_entries=_parse_positive_int(name="CNX_MAX_ARCHIVE_ENTRIES", raw_value=entries_raw),
            max_archive_uncompressed_bytes=_parse_positive_int(name="CNX_MAX_ARCHIVE_BYTES", raw_value=bytes_raw),
            content_base_url=base_url.rstrip("/"),
        )
