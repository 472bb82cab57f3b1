from __future__ import annotations

from io import BytesIO
from pathlib import Path
import threading
from zipfile import ZIP_DEFLATED, ZipFile

import pytest

from cnximport.archive import ArchiveHandle, normalize_entry_path, open_archive
from cnximport.cancellation import CancelToken
from cnximport.errors import CorruptArchive, EntryNotFound, FetchNetworkError, ImportCancelled, SourceUnavailable


def _zip_bytes(entries: list[tuple[str, bytes]]) -> bytes:
    buffer = BytesIO()
    with ZipFile(buffer, "w", ZIP_DEFLATED) as archive:
        for name, payload in entries:
            archive.writestr(name, payload)
    return buffer.getvalue()


def test_open_archive_strips_common_root_directory(tmp_path: Path) -> None:
    path = tmp_path / "col11406_1.7_complete.zip"
    path.write_bytes(
        _zip_bytes(
            [
                ("col11406_1.7_complete/collection.xml", b"<collection/>"),
                ("col11406_1.7_complete/m1/index.cnxml", b"<document/>"),
                ("col11406_1.7_complete/m1/figure.png", b"\x89PNG"),
            ]
        )
    )

    with open_archive(path, timeout=5) as handle:
        assert handle.root == "col11406_1.7_complete/"
        assert list(handle.list_entries()) == ["collection.xml", "m1/index.cnxml", "m1/figure.png"]
        assert handle.read_entry("m1/figure.png") == b"\x89PNG"
        assert handle.read_entry("./m1/../m1/figure.png") == b"\x89PNG"
        assert handle.open_entry("collection.xml").read() == b"<collection/>"


def test_list_entries_is_restartable() -> None:
    handle = ArchiveHandle(_zip_bytes([("a.txt", b"a"), ("b.txt", b"b")]))

    first = list(handle.list_entries())
    second = list(handle.list_entries())

    assert first == second == ["a.txt", "b.txt"]
    assert handle.root == ""


def test_read_entry_raises_entry_not_found() -> None:
    handle = ArchiveHandle(_zip_bytes([("collection.xml", b"<collection/>")]))

    with pytest.raises(EntryNotFound) as excinfo:
        handle.read_entry("m404/index.cnxml")

    assert excinfo.value.subject == "m404/index.cnxml"
    assert not handle.has_entry("m404/index.cnxml")


def test_non_zip_payload_is_corrupt_archive(tmp_path: Path) -> None:
    path = tmp_path / "broken.zip"
    path.write_bytes(b"this is definitely not a zip file")

    with pytest.raises(CorruptArchive):
        open_archive(path, timeout=5)


def test_truncated_zip_is_corrupt_archive(tmp_path: Path) -> None:
    payload = _zip_bytes([("collection.xml", b"<collection>" + b"x" * 4096 + b"</collection>")])
    path = tmp_path / "truncated.zip"
    path.write_bytes(payload[: len(payload) // 2])

    with pytest.raises(CorruptArchive):
        open_archive(path, timeout=5)


def test_path_traversal_entry_is_rejected() -> None:
    with pytest.raises(CorruptArchive, match="traversal"):
        ArchiveHandle(_zip_bytes([("../evil.txt", b"x"), ("collection.xml", b"<collection/>")]))


def test_archive_limits_are_enforced() -> None:
    payload = _zip_bytes([(f"m{index}/index.cnxml", b"<document/>") for index in range(5)])

    with pytest.raises(CorruptArchive, match="entries"):
        ArchiveHandle(payload, max_entries=3)
    with pytest.raises(CorruptArchive, match="expands"):
        ArchiveHandle(payload, max_uncompressed_bytes=10)


def test_missing_local_file_is_source_unavailable(tmp_path: Path) -> None:
    with pytest.raises(SourceUnavailable):
        open_archive(tmp_path / "absent.zip", timeout=5)


def test_remote_source_uses_supplied_fetcher_and_timeout() -> None:
    calls: list[tuple[str, float]] = []
    payload = _zip_bytes([("collection.xml", b"<collection/>")])

    def fetch(url: str, timeout: float) -> bytes:
        calls.append((url, timeout))
        return payload

    handle = open_archive("https://example.org/col.zip", timeout=42.0, fetch=fetch)

    assert calls == [("https://example.org/col.zip", 42.0)]
    assert handle.has_entry("collection.xml")


def test_remote_fetch_exceeding_timeout_is_source_unavailable() -> None:
    release = threading.Event()

    def slow_fetch(url: str, timeout: float) -> bytes:
        release.wait(5)
        return b""

    try:
        with pytest.raises(SourceUnavailable, match="Timed out"):
            open_archive("https://example.org/slow.zip", timeout=0.1, fetch=slow_fetch)
    finally:
        release.set()


def test_remote_network_error_is_source_unavailable() -> None:
    def failing_fetch(url: str, timeout: float) -> bytes:
        raise FetchNetworkError("Fetch returned HTTP 503", subject=url)

    with pytest.raises(SourceUnavailable) as excinfo:
        open_archive("https://example.org/down.zip", timeout=5, fetch=failing_fetch)

    assert excinfo.value.subject == "https://example.org/down.zip"


def test_cancelled_token_aborts_open(tmp_path: Path) -> None:
    path = tmp_path / "col.zip"
    path.write_bytes(_zip_bytes([("collection.xml", b"<collection/>")]))
    token = CancelToken()
    token.cancel("stop")

    with pytest.raises(ImportCancelled):
        open_archive(path, timeout=5, cancel=token)


def test_normalize_entry_path() -> None:
    assert normalize_entry_path("./m1/./img.png") == "m1/img.png"
    assert normalize_entry_path("/m1\\img.png") == "m1/img.png"
    assert normalize_entry_path("m1/sub/../img.png") == "m1/img.png"
    assert normalize_entry_path("./") == ""


def test_module_folder_is_not_mistaken_for_wrapper() -> None:
    handle = ArchiveHandle(_zip_bytes([("m1/index.cnxml", b"<document/>"), ("m1/ball.png", b"\x89PNG")]))

    assert handle.root == ""
    assert list(handle.list_entries()) == ["m1/index.cnxml", "m1/ball.png"]
    assert handle.read_entry("m1/ball.png") == b"\x89PNG"


def test_macos_resource_forks_are_ignored_when_finding_wrapper() -> None:
    handle = ArchiveHandle(
        _zip_bytes(
            [
                ("col1_complete/collection.xml", b"<collection/>"),
                ("col1_complete/m1/index.cnxml", b"<document/>"),
                ("__MACOSX/col1_complete/._collection.xml", b"fork"),
                ("col1_complete/m1/._index.cnxml", b"fork"),
            ]
        )
    )

    assert handle.root == "col1_complete/"
    assert list(handle.list_entries()) == ["collection.xml", "m1/index.cnxml"]


def test_root_manifest_wins_over_nested_one() -> None:
    handle = ArchiveHandle(
        _zip_bytes(
            [
                ("collection.xml", b"<collection/>"),
                ("old/collection.xml", b"<collection/>"),
                ("m1/index.cnxml", b"<document/>"),
            ]
        )
    )

    assert handle.root == ""
    assert handle.has_entry("old/collection.xml")
