from __future__ import annotations

from cnximport.assembler import AssemblyPolicy, assemble, matter_by_title
from cnximport.models import (
    BlockKind,
    Collection,
    ContentBlock,
    EntityKind,
    ImportIssue,
    IssueKind,
    Module,
    ModuleReference,
    Part,
)


def _module(module_id: str, title: str, html: str | None = None) -> Module:
    return Module(
        module_id=module_id,
        title=title,
        blocks=[ContentBlock(block_id=f"{module_id}-p", kind=BlockKind.PARAGRAPH, text=title, html=html)],
    )


def _summary(result) -> list[tuple[str, str, int]]:
    return [(entity.kind.value, entity.title, entity.depth) for entity in result.entities]


def test_parts_and_chapters_follow_depth_first_order() -> None:
    collection = Collection(
        title="Physics",
        nodes=[
            Part(title="Unit 1", children=[ModuleReference("mA"), ModuleReference("mB")]),
            Part(title="Unit 2", children=[ModuleReference("mC")]),
        ],
    )
    modules = {"mC": _module("mC", "C"), "mA": _module("mA", "A"), "mB": _module("mB", "B")}

    result = assemble(collection, modules)

    assert _summary(result) == [
        ("part-marker", "Unit 1", 0),
        ("chapter", "A", 1),
        ("chapter", "B", 1),
        ("part-marker", "Unit 2", 0),
        ("chapter", "C", 1),
    ]
    assert result.warnings == []


def test_top_level_modules_around_parts_become_front_and_back_matter() -> None:
    collection = Collection(
        title="Biology",
        nodes=[
            ModuleReference("m0", title="Preface"),
            Part(title="Cells", children=[ModuleReference("m1")]),
            ModuleReference("m2", title="Interlude"),
            Part(title="Genetics", children=[ModuleReference("m3")]),
            ModuleReference("m4", title="Periodic Table"),
        ],
    )
    modules = {module_id: _module(module_id, module_id) for module_id in ("m0", "m1", "m2", "m3", "m4")}

    result = assemble(collection, modules)

    assert [entity.kind for entity in result.entities] == [
        EntityKind.FRONT_MATTER,
        EntityKind.PART_MARKER,
        EntityKind.CHAPTER,
        EntityKind.CHAPTER,
        EntityKind.PART_MARKER,
        EntityKind.CHAPTER,
        EntityKind.BACK_MATTER,
    ]


def test_flat_collection_uses_title_conventions() -> None:
    collection = Collection(
        title="Flat",
        nodes=[ModuleReference("m1"), ModuleReference("m2"), ModuleReference("m3")],
    )
    modules = {
        "m1": _module("m1", "Preface"),
        "m2": _module("m2", "Kinematics"),
        "m3": _module("m3", "Appendix A: Units"),
    }

    result = assemble(collection, modules)

    assert [entity.kind for entity in result.entities] == [
        EntityKind.FRONT_MATTER,
        EntityKind.CHAPTER,
        EntityKind.BACK_MATTER,
    ]
    assert matter_by_title("  Glossary ") is EntityKind.BACK_MATTER
    assert matter_by_title("Chemistry") is EntityKind.CHAPTER


def test_titles_that_merely_start_with_matter_words_stay_chapters() -> None:
    collection = Collection(
        title="Optics",
        nodes=[
            ModuleReference("m1", title="Introduction"),
            ModuleReference("m2", title="Index of Refraction"),
            ModuleReference("m3", title="Glossary"),
            ModuleReference("m4", title="Lenses"),
            ModuleReference("m5", title="References and Pointers"),
            ModuleReference("m6", title="Appendix B"),
            ModuleReference("m7", title="Index"),
        ],
    )
    modules = {f"m{index}": _module(f"m{index}", f"m{index}") for index in range(1, 8)}

    result = assemble(collection, modules)

    assert [(entity.title, entity.kind) for entity in result.entities] == [
        ("Introduction", EntityKind.CHAPTER),
        ("Index of Refraction", EntityKind.CHAPTER),
        ("Glossary", EntityKind.CHAPTER),
        ("Lenses", EntityKind.CHAPTER),
        ("References and Pointers", EntityKind.CHAPTER),
        ("Appendix B", EntityKind.BACK_MATTER),
        ("Index", EntityKind.BACK_MATTER),
    ]
    assert matter_by_title("Indexing") is EntityKind.CHAPTER
    assert matter_by_title("Answers in Genesis") is EntityKind.CHAPTER
    assert matter_by_title("Appendix Aside") is EntityKind.CHAPTER
    assert matter_by_title("Appendix C - Constants") is EntityKind.BACK_MATTER


def test_single_child_parts_can_pass_through() -> None:
    collection = Collection(
        title="Nested",
        nodes=[
            Part(title="Outer", children=[Part(title="Inner", children=[ModuleReference("m1"), ModuleReference("m2")])]),
        ],
    )
    modules = {"m1": _module("m1", "One"), "m2": _module("m2", "Two")}

    default = assemble(collection, modules)
    collapsed = assemble(collection, modules, policy=AssemblyPolicy(collapse_single_child_parts=True))

    assert _summary(default) == [
        ("part-marker", "Outer", 0),
        ("part-marker", "Inner", 1),
        ("chapter", "One", 2),
        ("chapter", "Two", 2),
    ]
    assert _summary(collapsed) == [
        ("part-marker", "Inner", 0),
        ("chapter", "One", 1),
        ("chapter", "Two", 1),
    ]


def test_parts_without_modules_are_skipped() -> None:
    collection = Collection(
        title="Sparse",
        nodes=[Part(title="Empty", children=[Part(title="Also empty")]), Part(title="Full", children=[ModuleReference("m1")])],
    )

    result = assemble(collection, {"m1": _module("m1", "Only")})

    assert _summary(result) == [("part-marker", "Full", 0), ("chapter", "Only", 1)]


def test_slugs_are_unique_and_module_links_resolve() -> None:
    collection = Collection(
        title="Links",
        nodes=[ModuleReference("m1"), ModuleReference("m2"), ModuleReference("m3")],
    )
    modules = {
        "m1": _module("m1", "Introduction", html='<a href="cnx:m2#fig-1">next</a> <a href="cnx:m99">elsewhere</a>'),
        "m2": _module("m2", "Introduction"),
        "m3": _module("m3", "Introduction"),
    }

    result = assemble(collection, modules, policy=AssemblyPolicy(content_base_url="https://cnx.org/content/"))

    assert [entity.slug for entity in result.entities] == ["introduction", "introduction-2", "introduction-3"]
    html = result.entities[0].blocks[0].html
    assert html == '<a href="/introduction-2/#fig-1">next</a> <a href="https://cnx.org/content/m99">elsewhere</a>'
    assert modules["m1"].blocks[0].html.startswith('<a href="cnx:m2')


def test_repeated_module_reference_emits_each_occurrence() -> None:
    collection = Collection(
        title="Repeat",
        nodes=[Part(title="P1", children=[ModuleReference("m1")]), Part(title="P2", children=[ModuleReference("m1")])],
    )

    result = assemble(collection, {"m1": _module("m1", "Shared")})

    assert [entity.slug for entity in result.entities] == ["p1", "shared", "p2", "shared-2"]


def test_warnings_are_deduplicated_in_first_seen_order() -> None:
    collection = Collection(title="Warned", nodes=[ModuleReference("m1"), ModuleReference("m2")])
    first = ImportIssue(kind=IssueKind.ASSET_MISSING, subject="m1:m1/a.png", message="missing", module_id="m1")
    duplicate = ImportIssue(kind=IssueKind.ASSET_MISSING, subject="m1:m1/a.png", message="again", module_id="m1")
    other = ImportIssue(kind=IssueKind.EMPTY_MODULE, subject="m1", message="empty", module_id="m1")

    result = assemble(collection, {"m1": _module("m1", "One")}, issues=[first, duplicate, other])

    assert [(issue.kind, issue.subject) for issue in result.warnings] == [
        (IssueKind.ASSET_MISSING, "m1:m1/a.png"),
        (IssueKind.EMPTY_MODULE, "m1"),
        (IssueKind.MODULE_MISSING, "m2"),
    ]
    assert result.warnings[0].message == "missing"
    assert result.entities[1].blocks[0].block_id == "m2-placeholder"
