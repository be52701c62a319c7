"""
Catalog — an immutable snapshot of skill descriptors.

A Catalog is built once by ``load_catalog`` and never mutated afterwards;
runs hold a reference to the snapshot they started with, so reloading the
skills directory cannot change what an in-flight run sees.
"""

import time
from collections.abc import Iterable, Iterator
from types import MappingProxyType

import structlog

from ..errors import ParseError, SkillNotFound, VersionConflict
from .descriptor import SkillDescriptor, parse_skill_document
from .graph import DependencyGraph
from .loader import SkillSource
from .phases import Phase, SkillCategory
from .versions import parse_version, pick_latest

logger = structlog.get_logger()


def _graph_of(descriptors: Iterable[SkillDescriptor]) -> DependencyGraph:
    return DependencyGraph({d.id: d.depends_on for d in descriptors})


class Catalog:
    """Immutable, versioned index of skills with a validated dependency graph."""

    def __init__(
        self,
        descriptors: Iterable[SkillDescriptor],
        errors: Iterable[ParseError] = (),
        generation: int = 0,
    ):
        by_key: dict[tuple[str, str], SkillDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.key in by_key:
                raise VersionConflict(descriptor.id, descriptor.version)
            by_key[descriptor.key] = descriptor

        versions: dict[str, list[str]] = {}
        for skill_id, version in by_key:
            versions.setdefault(skill_id, []).append(version)
        for skill_id in versions:
            versions[skill_id].sort(key=parse_version)

        latest = [by_key[(sid, vs[-1])] for sid, vs in versions.items()]
        graph = _graph_of(latest)
        graph.check_acyclic()

        self._by_key = MappingProxyType(by_key)
        self._versions = MappingProxyType({k: tuple(v) for k, v in versions.items()})
        self._graph = graph
        self.errors: tuple[ParseError, ...] = tuple(errors)
        self.generation = generation
        self.loaded_at = time.time()

    # ── lookup ───────────────────────────────────────────────────────────

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._versions

    def __len__(self) -> int:
        return len(self._versions)

    def __iter__(self) -> Iterator[SkillDescriptor]:
        """Iterate over the latest version of every skill, sorted by id."""
        for skill_id in sorted(self._versions):
            yield self._by_key[(skill_id, self._versions[skill_id][-1])]

    @property
    def ids(self) -> list[str]:
        return sorted(self._versions)

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def all_versions(self) -> list[SkillDescriptor]:
        return [self._by_key[k] for k in sorted(self._by_key)]

    def versions(self, skill_id: str) -> list[str]:
        return list(self._versions.get(skill_id, ()))

    def get(self, skill_id: str, constraint: str | None = None) -> SkillDescriptor:
        """Return the highest version of skill_id satisfying constraint.

        Raises:
            SkillNotFound: If no version matches.
        """
        available = self._versions.get(skill_id)
        if not available:
            raise SkillNotFound(skill_id, constraint)
        try:
            version = pick_latest(list(available), constraint)
        except ValueError as e:
            raise SkillNotFound(skill_id, constraint) from e
        if version is None:
            raise SkillNotFound(skill_id, constraint)
        return self._by_key[(skill_id, version)]

    def dependency_graph(self, pinned: Iterable[SkillDescriptor] = ()) -> DependencyGraph:
        """Dependency graph with ``pinned`` descriptors in place of the latest versions.

        The snapshot's own graph is built from the latest version of every
        skill. A template that pins older versions must be ordered by the
        dependencies of those versions, which may differ or even form a
        cycle the latest versions do not have.
        """
        chosen = {d.id: d for d in pinned if d.key != self._latest_key(d.id)}
        if not chosen:
            return self._graph
        for descriptor in self:
            chosen.setdefault(descriptor.id, descriptor)
        return _graph_of(chosen.values())

    def resolve_order(
        self,
        skill_ids: Iterable[str],
        include_dependencies: bool = False,
        pinned: Iterable[SkillDescriptor] = (),
    ) -> list[str]:
        """Topologically order skill ids (dependencies first).

        Raises:
            SkillNotFound: If an id is not in the catalog.
            CycleError: If the pinned versions depend on each other in a cycle.
        """
        graph = self.dependency_graph(pinned)
        return graph.topological_order(skill_ids, include_dependencies)

    def _latest_key(self, skill_id: str) -> tuple[str, str] | None:
        available = self._versions.get(skill_id)
        return (skill_id, available[-1]) if available else None

    # ── listing / search ─────────────────────────────────────────────────

    def by_phase(self, phase: Phase | str) -> list[SkillDescriptor]:
        target = Phase.parse(phase) if isinstance(phase, str) else phase
        return [d for d in self if d.phase == target]

    def by_category(self, category: SkillCategory | str) -> list[SkillDescriptor]:
        target = SkillCategory(category) if isinstance(category, str) else category
        return [d for d in self if d.category == target]

    def by_tag(self, tag: str) -> list[SkillDescriptor]:
        return [d for d in self if tag in d.tags]

    def search(self, text: str) -> list[SkillDescriptor]:
        """Case-insensitive search over id, description and tags."""
        needle = text.lower().strip()
        if not needle:
            return list(self)
        return [
            d for d in self
            if needle in d.id.lower()
            or needle in d.description.lower()
            or any(needle in t.lower() for t in d.tags)
        ]

    def phase_summary(self) -> list[dict[str, object]]:
        """Skill ids grouped per phase, in phase order."""
        return [
            {
                "phase": phase.value,
                "skill_count": len(skills),
                "skills": [s.id for s in skills],
            }
            for phase in Phase
            for skills in [self.by_phase(phase)]
        ]

    def ambiguous_phases(self) -> list[SkillDescriptor]:
        """Descriptors whose phase was inferred from several (or no) candidates."""
        return [d for d in self if d.phase_ambiguous]


def load_catalog(
    sources: Iterable[SkillSource | SkillDescriptor],
    generation: int = 0,
) -> Catalog:
    """Parse sources and build a validated Catalog.

    A malformed document is recorded in ``Catalog.errors`` and skipped.
    Duplicate (id, version) pairs and dependency cycles reject the load as a
    whole; no partial catalog is returned.

    Raises:
        VersionConflict: Two sources declare the same id and version.
        CycleError: The depends_on relation is not acyclic.
    """
    descriptors: list[SkillDescriptor] = []
    errors: list[ParseError] = []
    for source in sources:
        if isinstance(source, SkillDescriptor):
            descriptors.append(source)
            continue
        try:
            descriptors.append(
                parse_skill_document(source.text, source.origin, source.default_name)
            )
        except ParseError as e:
            logger.warning("catalog.parse_error", origin=source.origin, error=e.message)
            errors.append(e)

    catalog = Catalog(descriptors, errors=errors, generation=generation)

    for skill_id, unknown in catalog.graph.missing.items():
        logger.warning("catalog.unknown_dependency", skill=skill_id, missing=sorted(unknown))
    for descriptor in catalog.ambiguous_phases():
        logger.warning(
            "catalog.phase_ambiguous",
            skill=descriptor.id,
            phase=descriptor.phase.value if descriptor.phase else None,
            candidates=[p.value for p in descriptor.phase_candidates],
        )
    logger.info(
        "catalog.loaded",
        skills=len(catalog),
        versions=len(catalog.all_versions()),
        errors=len(errors),
        generation=generation,
    )
    return catalog
