from __future__ import annotations

import json
from pathlib import Path
import threading
from zipfile import ZipFile

import pytest

from cnximport.cancellation import CancelToken
from cnximport.config import ImportSettings
from cnximport.decoders import CNXMLDecoder, HTMLDecoder
from cnximport.errors import (
    AssetMissing,
    CorruptArchive,
    HostRejected,
    ImportCancelled,
    ManifestMissing,
    ModuleParseError,
    SourceUnavailable,
)
from cnximport.host import InMemoryMediaStore
from cnximport.models import EntityKind, ImportResult, IssueKind
from cnximport.pipeline import run_import

ROOT = "col99999_1.0_complete"
_COLLXML_NS = 'xmlns="http://cnx.rice.edu/collxml" xmlns:col="http://cnx.rice.edu/collxml" xmlns:md="http://cnx.rice.edu/mdml"'
_CNXML_NS = 'xmlns="http://cnx.rice.edu/cnxml" xmlns:m="http://www.w3.org/1998/Math/MathML"'

UNITS_CONTENT = """
  <col:subcollection><md:title>Unit 1</md:title><col:content>
    <col:module document="mA"/><col:module document="mB"/>
  </col:content></col:subcollection>
  <col:subcollection><md:title>Unit 2</md:title><col:content>
    <col:module document="mC"/>
  </col:content></col:subcollection>
"""


def _manifest(content: str, title: str = "Test Physics") -> str:
    return (
        f'<?xml version="1.0"?><col:collection {_COLLXML_NS}>'
        f'<col:metadata><md:title>{title}</md:title><md:license url="http://creativecommons.org/licenses/by/4.0/"/></col:metadata>'
        f"<col:content>{content}</col:content></col:collection>"
    )


def _module(title: str, body: str) -> str:
    return f'<document {_CNXML_NS}><title>{title}</title><content>{body}</content></document>'


def _valid_modules() -> dict[str, str]:
    return {
        "mA/index.cnxml": _module("Module A", '<para id="a1">Alpha.</para>'),
        "mB/index.cnxml": _module(
            "Module B",
            '<para id="b1">Beta links to <link document="mC" target-id="c1">C</link>.</para>'
            '<figure id="fig-b"><media alt="graph"><image mime-type="image/png" src="graph.png"/></media></figure>',
        ),
        "mB/graph.png": "PNG-GRAPH",
        "mC/index.cnxml": _module("Module C", '<para id="c1">Gamma.</para>'),
    }


def _write_archive(path: Path, manifest: str, files: dict[str, str | bytes], *, reverse: bool = False) -> Path:
    entries: list[tuple[str, str | bytes]] = [("collection.xml", manifest), *files.items()]
    if reverse:
        entries.reverse()
    with ZipFile(path, "w") as archive:
        for name, payload in entries:
            archive.writestr(f"{ROOT}/{name}", payload)
    return path


def _run(path: Path, **kwargs: object) -> tuple[ImportResult, InMemoryMediaStore]:
    store = InMemoryMediaStore()
    result = run_import(path, 30.0, kwargs.pop("strict", False), media_store=store, **kwargs)  # type: ignore[arg-type]
    return result, store


def test_two_units_emit_five_entities_in_order(tmp_path: Path) -> None:
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), _valid_modules())

    result, store = _run(archive)

    assert [(entity.kind, entity.title) for entity in result.entities] == [
        (EntityKind.PART_MARKER, "Unit 1"),
        (EntityKind.CHAPTER, "Module A"),
        (EntityKind.CHAPTER, "Module B"),
        (EntityKind.PART_MARKER, "Unit 2"),
        (EntityKind.CHAPTER, "Module C"),
    ]
    assert result.warnings == []
    assert result.title == "Test Physics"
    assert result.license == "http://creativecommons.org/licenses/by/4.0/"
    assert store.calls == 1

    module_b = result.entities[2]
    assert module_b.blocks[0].html == 'Beta links to <a href="/module-c/#c1">C</a>.'
    assert module_b.blocks[1].src in store.items


def test_archive_entry_order_does_not_change_output(tmp_path: Path) -> None:
    forward = _write_archive(tmp_path / "forward.zip", _manifest(UNITS_CONTENT), _valid_modules())
    backward = _write_archive(tmp_path / "backward.zip", _manifest(UNITS_CONTENT), _valid_modules(), reverse=True)

    first, _ = _run(forward)
    second, _ = _run(backward)

    assert first.to_dict() == second.to_dict()


def test_repeated_runs_serialize_identically(tmp_path: Path) -> None:
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), _valid_modules())

    first, _ = _run(archive)
    second, _ = _run(archive)

    assert json.dumps(first.to_dict(), sort_keys=False) == json.dumps(second.to_dict(), sort_keys=False)


def test_missing_image_degrades_module_b(tmp_path: Path) -> None:
    files = _valid_modules()
    del files["mB/graph.png"]
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), files)

    result, store = _run(archive)

    assert len(result.entities) == 5
    figure = result.entities[2].blocks[1]
    assert figure.src == "asset-missing:mB/graph.png"
    assert store.calls == 0
    assert [(issue.kind, issue.module_id, issue.asset_path) for issue in result.warnings] == [
        (IssueKind.ASSET_MISSING, "mB", "mB/graph.png")
    ]


def test_missing_image_fails_in_strict_mode(tmp_path: Path) -> None:
    files = _valid_modules()
    del files["mB/graph.png"]
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), files)

    with pytest.raises(AssetMissing):
        _run(archive, strict=True)


def test_unparsable_module_becomes_placeholder_chapter(tmp_path: Path) -> None:
    files = _valid_modules()
    files["mB/index.cnxml"] = "<document><content><para>unterminated"
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), files)

    result, _ = _run(archive)

    assert [entity.kind for entity in result.entities].count(EntityKind.CHAPTER) == 3
    placeholder = result.entities[2]
    assert placeholder.module_id == "mB"
    assert placeholder.blocks[0].block_id == "mB-placeholder"
    assert [(issue.kind, issue.subject) for issue in result.warnings] == [(IssueKind.MODULE_PARSE_ERROR, "mB")]


def test_unparsable_module_fails_in_strict_mode(tmp_path: Path) -> None:
    files = _valid_modules()
    files["mB/index.cnxml"] = "<document><content><para>unterminated"
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), files)
    emitted: list[ImportResult] = []

    with pytest.raises(ModuleParseError) as excinfo:
        _run(archive, strict=True, emit_entities=emitted.append)

    assert excinfo.value.subject == "mB"
    assert emitted == []


def test_module_absent_from_archive_is_placeholder(tmp_path: Path) -> None:
    content = '<col:module document="mA"/><col:module document="m404"><md:title>Ghost</md:title></col:module>'
    archive = _write_archive(tmp_path / "col.zip", _manifest(content), _valid_modules())

    result, _ = _run(archive)

    assert [entity.title for entity in result.entities] == ["Module A", "Ghost"]
    assert result.entities[1].blocks[0].block_id == "m404-placeholder"
    assert [(issue.kind, issue.subject) for issue in result.warnings] == [(IssueKind.MODULE_MISSING, "m404")]


def test_shared_module_is_decoded_once(tmp_path: Path) -> None:
    calls: list[str] = []

    class _CountingDecoder(CNXMLDecoder):
        def decode(self, payload: bytes, **kwargs: object):  # type: ignore[override]
            calls.append(str(kwargs["module_id"]))
            return super().decode(payload, **kwargs)  # type: ignore[arg-type]

    content = """
      <col:subcollection><md:title>First</md:title><col:content><col:module document="mA"/></col:content></col:subcollection>
      <col:subcollection><md:title>Again</md:title><col:content><col:module document="mA"/></col:content></col:subcollection>
    """
    archive = _write_archive(tmp_path / "col.zip", _manifest(content), _valid_modules())

    result, _ = _run(archive, decoders=[_CountingDecoder(), HTMLDecoder()])

    assert calls == ["mA"]
    assert [entity.slug for entity in result.entities] == ["first", "module-a", "again", "module-a-2"]


def test_entities_are_handed_to_host(tmp_path: Path) -> None:
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), _valid_modules())
    emitted: list[ImportResult] = []

    result, _ = _run(archive, emit_entities=emitted.append)

    assert emitted == [result]


def test_host_rejection_propagates(tmp_path: Path) -> None:
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), _valid_modules())

    def reject(result: ImportResult) -> None:
        raise HostRejected("Book already exists", subject=result.title)

    with pytest.raises(HostRejected, match="already exists"):
        _run(archive, emit_entities=reject)


def test_remote_fetch_timeout_is_source_unavailable() -> None:
    release = threading.Event()

    def slow_fetch(url: str, timeout: float) -> bytes:
        release.wait(5)
        return b""

    try:
        with pytest.raises(SourceUnavailable):
            run_import(
                "https://cnx.example.org/exports/col99999_1.0_complete.zip",
                0.2,
                False,
                media_store=InMemoryMediaStore(),
                fetch=slow_fetch,
            )
    finally:
        release.set()


def test_remote_source_is_imported(tmp_path: Path) -> None:
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), _valid_modules())
    payload = archive.read_bytes()

    result = run_import(
        "https://cnx.example.org/col.zip",
        10.0,
        False,
        media_store=InMemoryMediaStore(),
        fetch=lambda url, timeout: payload,
    )

    assert len(result.entities) == 5


def test_fatal_archive_errors(tmp_path: Path) -> None:
    not_zip = tmp_path / "not.zip"
    not_zip.write_bytes(b"plain text")
    no_manifest = tmp_path / "no-manifest.zip"
    with ZipFile(no_manifest, "w") as archive:
        archive.writestr(f"{ROOT}/mA/index.cnxml", _module("A", "<para>a</para>"))

    with pytest.raises(CorruptArchive):
        _run(not_zip)
    with pytest.raises(ManifestMissing):
        _run(no_manifest)
    with pytest.raises(SourceUnavailable):
        _run(tmp_path / "absent.zip")


def test_cancelled_run_emits_nothing(tmp_path: Path) -> None:
    archive = _write_archive(tmp_path / "col.zip", _manifest(UNITS_CONTENT), _valid_modules())
    token = CancelToken()
    token.cancel("user aborted")
    emitted: list[ImportResult] = []

    with pytest.raises(ImportCancelled):
        _run(archive, cancel=token, emit_entities=emitted.append)

    assert emitted == []


def test_settings_control_strict_and_part_collapsing(tmp_path: Path) -> None:
    content = '<col:subcollection><md:title>Solo</md:title><col:content><col:module document="mA"/></col:content></col:subcollection>'
    archive = _write_archive(tmp_path / "col.zip", _manifest(content), _valid_modules())
    settings = ImportSettings(collapse_single_child_parts=True, max_module_workers=1, max_asset_workers=1)

    result = run_import(archive, 30.0, media_store=InMemoryMediaStore(), settings=settings)

    assert [(entity.kind, entity.depth) for entity in result.entities] == [(EntityKind.CHAPTER, 0)]
