"""
Runtime wiring — builds every service from an AppConfig.

    config = load_config(Path("loopwork.yaml"))
    runtime = build_runtime(config, runner=handlers)
    await runtime.engine.recover()
    run = await runtime.engine.start("core-dev")
"""

from dataclasses import dataclass
from pathlib import Path

import structlog

from .archive.archive import RunArchive
from .archive.calibrator import Calibrator
from .catalog.registry import CatalogRegistry
from .config.schema import AppConfig
from .engine.engine import ExecutionEngine
from .engine.persistence import RunStore
from .engine.runner import HandlerRegistry, SkillRunner
from .loops.store import LoopTemplateStore
from .memory.journal import MemoryJournal
from .memory.store import MemoryStore
from .query import ExecutionQuery

logger = structlog.get_logger()


@dataclass
class Runtime:
    config: AppConfig
    catalogs: CatalogRegistry
    templates: LoopTemplateStore
    memory: MemoryStore
    journal: MemoryJournal
    archive: RunArchive
    calibrator: Calibrator
    run_store: RunStore | None
    engine: ExecutionEngine
    query: ExecutionQuery

    def reload_catalog(self) -> int:
        """Reload skills; running runs keep their snapshot. Returns the new generation."""
        return self.catalogs.reload().generation


def _under(state_dir: Path | None, explicit: Path | None, name: str) -> Path | None:
    if explicit is not None:
        return explicit
    return state_dir / name if state_dir is not None else None


def build_runtime(config: AppConfig | None = None, runner: SkillRunner | None = None) -> Runtime:
    """Wire catalog, templates, memory, archive, persistence and engine.

    Loop definitions that fail to load are logged and skipped. A broken
    skills directory (cycle, duplicate version) aborts startup.

    Args:
        config: Validated configuration. Defaults to ``AppConfig()``.
        runner: Executes skills. Defaults to an empty HandlerRegistry, which
            fails every skill permanently.
    """
    config = config or AppConfig()
    log = logger.bind(component="runtime")

    catalogs = CatalogRegistry.from_dirs(config.catalog.skills_dirs)
    templates = LoopTemplateStore(catalogs)
    for loops_dir in config.catalog.loops_dirs:
        loaded, errors = templates.load_dir(loops_dir)
        log.info("runtime.loops_loaded", dir=str(loops_dir), loaded=len(loaded), errors=len(errors))

    state_dir = config.engine.state_dir
    memory = MemoryStore(
        root=_under(state_dir, config.memory.root, "memory"),
        strict=bool(config.memory.strict),
    )
    archive = RunArchive(_under(state_dir, config.archive.root, "archive"))
    run_store = RunStore(state_dir) if state_dir is not None else None

    engine = ExecutionEngine(
        catalogs=catalogs,
        templates=templates,
        runner=runner or HandlerRegistry(),
        memory=memory,
        archive=archive,
        config=config.engine,
        run_store=run_store,
    )
    log.info(
        "runtime.ready",
        environment=config.environment,
        skills=len(catalogs.snapshot()),
        loops=len(templates.list_templates()),
        state_dir=str(state_dir) if state_dir else None,
    )
    return Runtime(
        config=config,
        catalogs=catalogs,
        templates=templates,
        memory=memory,
        journal=engine.journal,
        archive=archive,
        calibrator=Calibrator(archive, window=config.archive.calibration_window),
        run_store=run_store,
        engine=engine,
        query=ExecutionQuery(engine, archive),
    )
