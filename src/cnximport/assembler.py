"""Tree assembler: walk the collection and emit ordered host entities."""

from __future__ import annotations

from dataclasses import dataclass, replace
import html
import logging
import re
from typing import Iterable, Mapping

from cnximport.config import DEFAULT_CONTENT_BASE_URL
from cnximport.models import (
    MODULE_HREF_PREFIX,
    Collection,
    CollectionNode,
    EntityKind,
    ImportEntity,
    ImportIssue,
    ImportResult,
    IssueKind,
    Module,
    ModuleReference,
    Part,
    iter_module_references,
)
from cnximport.module_decoder import placeholder_module
from cnximport.normalization import SlugRegistry, normalize_whitespace

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(
    r"preface|foreword|acknowledge?ments|dedication|about the authors?",
    re.IGNORECASE,
)
_BACK_MATTER_RE = re.compile(
    r"(?:appendix(?: (?:[a-z]|\d+|[ivxlc]+))?|answer key)(?: ?[:.-] ?.*)?"
    r"|index|glossary|references|answers|bibliography",
    re.IGNORECASE,
)

_MODULE_HREF_RE = re.compile(r'href="' + re.escape(MODULE_HREF_PREFIX) + r'(?P<module>[A-Za-z0-9_.@-]+)(?P<fragment>#[^"]*)?"')


@dataclass(frozen=True, slots=True)
class AssemblyPolicy:
    """Host flattening and linking conventions."""

    collapse_single_child_parts: bool = False
    content_base_url: str = DEFAULT_CONTENT_BASE_URL


def matter_by_title(title: str) -> EntityKind:
    """Classify a whole title such as "Preface" or "Appendix B: Constants"."""

    normalized = normalize_whitespace(title)
    if _FRONT_MATTER_RE.fullmatch(normalized):
        return EntityKind.FRONT_MATTER
    if _BACK_MATTER_RE.fullmatch(normalized):
        return EntityKind.BACK_MATTER
    return EntityKind.CHAPTER


def flat_matter_kinds(titles: list[str]) -> list[EntityKind]:
    """Kinds for a collection without parts.

    Only the leading run of front-matter titles and the trailing run of
    back-matter titles are matter; everything between is a chapter.
    """

    kinds = [EntityKind.CHAPTER] * len(titles)
    start = 0
    while start < len(titles) and matter_by_title(titles[start]) is EntityKind.FRONT_MATTER:
        kinds[start] = EntityKind.FRONT_MATTER
        start += 1
    end = len(titles)
    while end > start and matter_by_title(titles[end - 1]) is EntityKind.BACK_MATTER:
        kinds[end - 1] = EntityKind.BACK_MATTER
        end -= 1
    return kinds


def _has_modules(part: Part) -> bool:
    return next(iter_module_references(part.children), None) is not None


def _dedupe(issues: Iterable[ImportIssue]) -> list[ImportIssue]:
    seen: set[tuple[IssueKind, str]] = set()
    unique: list[ImportIssue] = []
    for issue in issues:
        if issue.key in seen:
            continue
        seen.add(issue.key)
        unique.append(issue)
    return unique


class _Assembler:
    def __init__(self, collection: Collection, modules: Mapping[str, Module], policy: AssemblyPolicy) -> None:
        self._collection = collection
        self._modules = modules
        self._policy = policy
        self._slugs = SlugRegistry()
        self.entities: list[ImportEntity] = []
        self.issues: list[ImportIssue] = []
        self._module_slugs: dict[str, str] = {}

    def run(self) -> None:
        nodes = self._collection.nodes
        part_positions = [index for index, node in enumerate(nodes) if isinstance(node, Part) and _has_modules(node)]
        module_positions = [index for index, node in enumerate(nodes) if isinstance(node, ModuleReference)]

        kinds: dict[int, EntityKind] = {}
        if part_positions:
            for index in module_positions:
                if index < part_positions[0]:
                    kinds[index] = EntityKind.FRONT_MATTER
                elif index > part_positions[-1]:
                    kinds[index] = EntityKind.BACK_MATTER
                else:
                    kinds[index] = EntityKind.CHAPTER
        else:
            titles = [self._title(nodes[index]) for index in module_positions]
            kinds.update(zip(module_positions, flat_matter_kinds(titles)))

        for index, node in enumerate(nodes):
            if isinstance(node, Part):
                self._visit_part(node, depth=0)
            else:
                self._visit_module(node, depth=0, kind=kinds[index])

        self._rewrite_module_links()

    def _title(self, reference: ModuleReference) -> str:
        module = self._modules.get(reference.module_id)
        return reference.title or (module.title if module is not None else reference.module_id)

    def _visit(self, nodes: list[CollectionNode], depth: int) -> None:
        for node in nodes:
            if isinstance(node, Part):
                self._visit_part(node, depth)
            else:
                self._visit_module(node, depth, kind=EntityKind.CHAPTER)

    def _visit_part(self, part: Part, depth: int) -> None:
        if not _has_modules(part):
            logger.debug("Skipping part '%s' with no modules", part.title)
            return
        if self._policy.collapse_single_child_parts and len(part.children) == 1:
            self._visit(part.children, depth)
            return
        self.entities.append(
            ImportEntity(
                kind=EntityKind.PART_MARKER,
                title=part.title,
                slug=self._slugs.claim(part.title),
                depth=depth,
            )
        )
        self._visit(part.children, depth + 1)

    def _visit_module(self, reference: ModuleReference, depth: int, kind: EntityKind) -> None:
        module = self._modules.get(reference.module_id)
        if module is None:
            module = placeholder_module(reference, "not decoded")
            self.issues.append(
                ImportIssue(
                    kind=IssueKind.MODULE_MISSING,
                    subject=reference.module_id,
                    message="No decoded content supplied for module",
                    module_id=reference.module_id,
                )
            )

        title = reference.title or module.title
        slug = self._slugs.claim(title)
        self._module_slugs.setdefault(reference.module_id, slug)
        self.entities.append(
            ImportEntity(
                kind=kind,
                title=title,
                slug=slug,
                depth=depth,
                module_id=reference.module_id,
                blocks=[replace(block) for block in module.blocks],
            )
        )

    def _rewrite_module_links(self) -> None:
        base_url = self._policy.content_base_url.rstrip("/")

        def _replace(match: re.Match[str]) -> str:
            module_id = match.group("module")
            fragment = match.group("fragment") or ""
            slug = self._module_slugs.get(module_id)
            target = f"/{slug}/{fragment}" if slug is not None else f"{base_url}/{module_id}{fragment}"
            return f'href="{html.escape(target)}"'

        for entity in self.entities:
            for block in entity.blocks:
                if block.html and MODULE_HREF_PREFIX in block.html:
                    block.html = _MODULE_HREF_RE.sub(_replace, block.html)


def assemble(
    collection: Collection,
    decoded_modules: Mapping[str, Module],
    *,
    issues: Iterable[ImportIssue] = (),
    policy: AssemblyPolicy | None = None,
) -> ImportResult:
    """Emit host entities in the collection's depth-first document order.

    ``issues`` are the warnings gathered by earlier stages, already in document
    order; they are merged with assembler warnings and deduplicated by
    (kind, subject).
    """

    assembler = _Assembler(collection, decoded_modules, policy or AssemblyPolicy())
    assembler.run()

    warnings = _dedupe([*issues, *assembler.issues])
    logger.info(
        "Assembled '%s': %d entit%s, %d warning(s)",
        collection.title,
        len(assembler.entities),
        "y" if len(assembler.entities) == 1 else "ies",
        len(warnings),
    )
    return ImportResult(
        title=collection.title,
        entities=assembler.entities,
        warnings=warnings,
        license=collection.license,
        metadata=dict(collection.metadata),
    )
