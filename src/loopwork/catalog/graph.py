"""
Dependency graph over skill ids.

Nodes live in an arena: each id is mapped to an integer index and edges are
stored as tuples of indices, so a snapshot of the graph is a handful of
immutable tuples. Cycle detection is a three-color depth-first search
(white = unvisited, gray = on the current path, black = done); reaching a
gray node is a back-edge and therefore a cycle.
"""

from collections.abc import Iterable, Mapping

import structlog

from ..errors import CycleError, SkillNotFound

logger = structlog.get_logger()

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Immutable, index-based dependency graph.

    Edges point from a skill to the skills it depends on. Dependencies on
    ids that are not nodes of the graph are kept aside in ``missing`` and do
    not take part in ordering.
    """

    def __init__(self, edges: Mapping[str, Iterable[str]]):
        """Build the graph.

        Args:
            edges: Mapping of skill id -> ids it depends on. Every key is a node.
        """
        self._ids: tuple[str, ...] = tuple(sorted(edges))
        self._index: dict[str, int] = {sid: i for i, sid in enumerate(self._ids)}

        deps: list[tuple[int, ...]] = []
        missing: dict[str, frozenset[str]] = {}
        for sid in self._ids:
            wanted = set(edges[sid])
            known = sorted(self._index[d] for d in wanted if d in self._index)
            unknown = frozenset(d for d in wanted if d not in self._index)
            deps.append(tuple(known))
            if unknown:
                missing[sid] = unknown
        self._deps: tuple[tuple[int, ...], ...] = tuple(deps)
        self.missing: Mapping[str, frozenset[str]] = missing

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._index

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> tuple[str, ...]:
        return self._ids

    def dependencies(self, skill_id: str) -> list[str]:
        """Direct, known dependencies of a skill."""
        return [self._ids[i] for i in self._deps[self._require(skill_id)]]

    def dependents(self, skill_id: str) -> list[str]:
        """Skills that depend directly on skill_id."""
        target = self._require(skill_id)
        return [self._ids[i] for i, deps in enumerate(self._deps) if target in deps]

    def transitive_dependencies(self, skill_id: str) -> set[str]:
        seen: set[int] = set()
        stack = list(self._deps[self._require(skill_id)])
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._deps[node])
        return {self._ids[i] for i in seen}

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a path ``[a, b, ..., a]`` or None if the graph is a DAG."""
        color = [_WHITE] * len(self._ids)
        for root in range(len(self._ids)):
            if color[root] != _WHITE:
                continue
            cycle = self._dfs_cycle(root, color)
            if cycle:
                return cycle
        return None

    def check_acyclic(self) -> None:
        """Raise CycleError if the graph contains a cycle."""
        cycle = self.find_cycle()
        if cycle:
            logger.error("catalog.cycle_detected", cycle=cycle)
            raise CycleError(cycle)

    def topological_order(
        self,
        skill_ids: Iterable[str],
        include_dependencies: bool = False,
    ) -> list[str]:
        """Order skill_ids so that every id comes after all of its dependencies.

        Args:
            skill_ids: Ids to order. Order of the input breaks ties.
            include_dependencies: If True, transitive dependencies that are not
                in skill_ids are pulled into the result as well. Otherwise
                edges leaving the requested set are ignored.

        Raises:
            SkillNotFound: If an id is not a node of the graph.
            CycleError: If the requested subgraph contains a cycle.
        """
        requested = [self._require(sid) for sid in dict.fromkeys(skill_ids)]
        allowed = None if include_dependencies else set(requested)

        color = [_WHITE] * len(self._ids)
        order: list[int] = []
        for root in requested:
            if color[root] == _WHITE:
                self._dfs_postorder(root, color, order, allowed)
        return [self._ids[i] for i in order]

    # ── internals ────────────────────────────────────────────────────────

    def _require(self, skill_id: str) -> int:
        try:
            return self._index[skill_id]
        except KeyError:
            raise SkillNotFound(skill_id) from None

    def _dfs_cycle(self, root: int, color: list[int]) -> list[str] | None:
        path: list[int] = [root]
        stack = [iter(self._deps[root])]
        color[root] = _GRAY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = _BLACK
                stack.pop()
                continue
            if color[nxt] == _GRAY:
                start = path.index(nxt)
                return [self._ids[i] for i in path[start:]] + [self._ids[nxt]]
            if color[nxt] == _WHITE:
                color[nxt] = _GRAY
                path.append(nxt)
                stack.append(iter(self._deps[nxt]))
        return None

    def _dfs_postorder(
        self,
        root: int,
        color: list[int],
        order: list[int],
        allowed: set[int] | None,
    ) -> None:
        path: list[int] = [root]
        stack = [iter(self._deps[root])]
        color[root] = _GRAY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                node = path.pop()
                color[node] = _BLACK
                order.append(node)
                stack.pop()
                continue
            if allowed is not None and nxt not in allowed:
                continue
            if color[nxt] == _GRAY:
                start = path.index(nxt)
                raise CycleError([self._ids[i] for i in path[start:]] + [self._ids[nxt]])
            if color[nxt] == _WHITE:
                color[nxt] = _GRAY
                path.append(nxt)
                stack.append(iter(self._deps[nxt]))
