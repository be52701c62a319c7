"""
Execution queries — the read-only view polled by dashboards.

Payloads use camelCase keys (``loopId``, ``currentPhase``, ``startedAt``)
regardless of how runs are represented internally. Terminal runs that are
no longer hosted by the engine are served from the archive.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .archive.archive import RunArchive
from .engine.engine import ExecutionEngine
from .engine.state import Run, RunStatus
from .errors import RunNotFound


class Progress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    phases_completed: int
    phases_total: int
    skills_completed: int
    skills_total: int


class ExecutionSummary(BaseModel):
    """One row of the executions list."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    loop_id: str
    loop_version: str
    project: str = ""
    status: RunStatus
    current_phase: str | None = None
    block_reason: str | None = None
    progress: Progress
    started_at: float
    updated_at: float

    @classmethod
    def from_run(cls, run: Run) -> "ExecutionSummary":
        return cls(
            id=run.id,
            loop_id=run.loop_id,
            loop_version=run.loop_version,
            project=run.project,
            status=run.status,
            current_phase=None if run.status == RunStatus.COMPLETED else run.current_phase_name,
            block_reason=run.block_reason.value if run.block_reason else None,
            progress=Progress(**run.progress),
            started_at=run.started_at,
            updated_at=run.updated_at,
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ExecutionDetail(ExecutionSummary):
    """Full per-execution view: phases, invocations, gates and recent logs."""

    completed_at: float | None = None
    estimated_duration: float | None = None
    error: str | None = None
    abort_reason: str | None = None
    deliverables: dict[str, Any] = Field(default_factory=dict)
    phases: list[dict[str, Any]] = Field(default_factory=list)
    invocations: list[dict[str, Any]] = Field(default_factory=list)
    gates: list[dict[str, Any]] = Field(default_factory=list)
    logs: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: Run, log_limit: int | None = 100) -> "ExecutionDetail":
        summary = ExecutionSummary.from_run(run)
        data = run.to_dict()
        return cls(
            **summary.model_dump(),
            completed_at=run.completed_at,
            estimated_duration=run.estimated_duration,
            error=run.error,
            abort_reason=run.abort_reason,
            deliverables=dict(run.deliverables),
            phases=data["phases"],
            invocations=data["invocations"],
            gates=data["gate_log"],
            logs=data["logs"][-log_limit:] if log_limit else data["logs"],
        )


class ExecutionQuery:
    """Read-only queries over live runs and the archive."""

    def __init__(self, engine: ExecutionEngine, archive: RunArchive | None = None):
        self.engine = engine
        self.archive = archive

    def list_executions(
        self,
        status: RunStatus | str | None = None,
        loop_id: str | None = None,
        project: str | None = None,
    ) -> list[ExecutionSummary]:
        """Summaries of hosted runs, most recently started first."""
        runs = self.engine.list_runs(status=status, loop_id=loop_id, project=project)
        return [ExecutionSummary.from_run(run) for run in runs]

    def detail(self, run_id: str, log_limit: int | None = 100) -> ExecutionDetail:
        """
        Raises:
            RunNotFound: Neither the engine nor the archive knows the run.
        """
        try:
            run = self.engine.get_run(run_id)
        except RunNotFound:
            data = self.archive.get(run_id) if self.archive is not None else None
            if data is None:
                raise
            run = Run.from_dict(data)
        return ExecutionDetail.from_run(run, log_limit=log_limit)
