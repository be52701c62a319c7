"""
CatalogRegistry — owns the current Catalog snapshot and its reload lifecycle.

``snapshot()`` returns the current immutable Catalog. ``reload()`` builds a
new one from the same sources and swaps it in only if the load succeeds; a
failed reload leaves the previous snapshot in place. Snapshots already
handed to runs are never touched.
"""

import threading
from collections.abc import Callable, Iterable
from pathlib import Path

import structlog

from ..errors import LoopworkError
from .catalog import Catalog, load_catalog
from .descriptor import SkillDescriptor
from .loader import SkillSource, discover_skill_sources

logger = structlog.get_logger()

SourceProvider = Callable[[], Iterable[SkillSource | SkillDescriptor]]


class CatalogRegistry:
    """Holds the live catalog snapshot."""

    def __init__(self) -> None:
        self._provider: SourceProvider | None = None
        self._snapshot: Catalog | None = None
        self._generation = 0
        self._lock = threading.Lock()
        self.log = logger.bind(component="catalog_registry")

    @classmethod
    def from_dirs(cls, skills_dirs: list[Path | str]) -> "CatalogRegistry":
        """Create and initialise a registry that scans skills directories."""
        registry = cls()
        dirs = list(skills_dirs)
        registry.init(lambda: discover_skill_sources(dirs))
        return registry

    @property
    def initialized(self) -> bool:
        return self._snapshot is not None

    def init(
        self,
        sources: SourceProvider | Iterable[SkillSource | SkillDescriptor],
    ) -> Catalog:
        """Load the first snapshot.

        Args:
            sources: Either a callable returning sources (re-invoked on every
                reload) or a fixed iterable of sources.

        Raises:
            CycleError, VersionConflict: The initial load is rejected.
        """
        if callable(sources):
            self._provider = sources
        else:
            fixed = list(sources)
            self._provider = lambda: fixed
        return self.reload()

    def reload(self) -> Catalog:
        """Build a new snapshot from the sources and make it current.

        Raises:
            RuntimeError: If init() was never called.
            CycleError, VersionConflict: The new snapshot is rejected and the
                previous one stays current.
        """
        if self._provider is None:
            raise RuntimeError("CatalogRegistry.init() must be called before reload()")
        with self._lock:
            generation = self._generation + 1
            try:
                catalog = load_catalog(self._provider(), generation=generation)
            except LoopworkError as e:
                self.log.error(
                    "catalog.reload_failed",
                    generation=generation,
                    error=str(e),
                    kept_generation=self._generation if self._snapshot else None,
                )
                raise
            self._generation = generation
            self._snapshot = catalog
        self.log.info("catalog.snapshot_swapped", generation=generation, skills=len(catalog))
        return catalog

    def snapshot(self) -> Catalog:
        """Return the current immutable snapshot.

        Raises:
            RuntimeError: If nothing has been loaded yet.
        """
        if self._snapshot is None:
            raise RuntimeError("No catalog loaded; call init() first")
        return self._snapshot
