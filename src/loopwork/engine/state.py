"""
Run state — the data the Execution Engine mutates.

A Run is only ever mutated by the engine. Its invocation list, gate log and
execution log are append-only; terminal runs are archived as-is.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ..gates.evaluator import GateRecord


class RunStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    BLOCKED = "blocked"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.ABORTED})


class BlockReason(str, Enum):
    SKILL_FAILURE = "skill_failure"          # retries exhausted
    GATE_FAILED = "gate_failed"              # blocking automatic gate FAILed
    AWAITING_APPROVAL = "awaiting_approval"  # human gate PENDING
    GATE_REJECTED = "gate_rejected"          # human gate rejected


class InvocationStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


LOG_LEVELS = ("debug", "info", "warning", "error")
LOG_CATEGORIES = ("phase", "skill", "gate", "system")


@dataclass
class PhaseRecord:
    """Entry/exit of one phase."""

    index: int
    name: str
    entered_at: float
    exited_at: float | None = None
    gate_result: str | None = None


@dataclass
class SkillInvocation:
    """One dispatch of a skill within a run, including its retries."""

    id: str
    skill_id: str
    skill_version: str
    phase_index: int
    phase: str
    status: InvocationStatus = InvocationStatus.RUNNING
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    retry_count: int = 0
    deliverables: dict[str, Any] = field(default_factory=dict)
    refs: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def close(self, status: InvocationStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.ended_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SkillInvocation":
        valid_fields = {f for f in cls.__dataclass_fields__}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        filtered["status"] = InvocationStatus(filtered.get("status", "running"))
        return cls(**filtered)


@dataclass(frozen=True)
class LogEntry:
    timestamp: float
    level: str
    category: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    phase: str | None = None


def generate_run_id() -> str:
    """Unique run id: timestamp + short uuid."""
    ts = time.strftime("%Y%m%d-%H%M%S")
    return f"run-{ts}-{uuid.uuid4().hex[:6]}"


@dataclass
class Run:
    """One execution of a loop template."""

    id: str
    loop_id: str
    loop_version: str
    phase_names: list[str]
    skills_total: int
    project: str = ""
    status: RunStatus = RunStatus.PENDING
    current_phase_index: int = 0
    started_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    estimated_duration: float | None = None
    catalog_generation: int = 0
    block_reason: BlockReason | None = None
    block_detail: str | None = None
    paused_from: RunStatus | None = None
    abort_reason: str | None = None
    error: str | None = None
    phases: list[PhaseRecord] = field(default_factory=list)
    invocations: list[SkillInvocation] = field(default_factory=list)
    deliverables: dict[str, Any] = field(default_factory=dict)
    gate_log: list[GateRecord] = field(default_factory=list)
    gate_attempts: dict[str, int] = field(default_factory=dict)
    logs: list[LogEntry] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    # ── status ───────────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    @property
    def current_phase_name(self) -> str | None:
        if 0 <= self.current_phase_index < len(self.phase_names):
            return self.phase_names[self.current_phase_index]
        return None

    @property
    def duration(self) -> float:
        end = self.completed_at or time.time()
        return max(0.0, end - self.started_at)

    def touch(self) -> None:
        self.updated_at = time.time()

    # ── phases / invocations ─────────────────────────────────────────────

    def enter_phase(self, index: int) -> PhaseRecord:
        self.current_phase_index = index
        record = PhaseRecord(index=index, name=self.phase_names[index], entered_at=time.time())
        self.phases.append(record)
        return record

    def current_phase_record(self) -> PhaseRecord | None:
        for record in reversed(self.phases):
            if record.index == self.current_phase_index:
                return record
        return None

    def succeeded_skills(self, phase_index: int) -> set[str]:
        return {
            inv.skill_id
            for inv in self.invocations
            if inv.phase_index == phase_index and inv.status == InvocationStatus.SUCCEEDED
        }

    def invocations_for(self, phase_index: int, skill_id: str | None = None) -> list[SkillInvocation]:
        return [
            inv for inv in self.invocations
            if inv.phase_index == phase_index and (skill_id is None or inv.skill_id == skill_id)
        ]

    def running_invocations(self) -> list[SkillInvocation]:
        return [inv for inv in self.invocations if inv.status == InvocationStatus.RUNNING]

    # ── gates ────────────────────────────────────────────────────────────

    def gate_instance_id(self, gate_id: str) -> str:
        return f"{gate_id}#{self.gate_attempts.get(gate_id, 1)}"

    def open_gate_instance(self, gate_id: str) -> str:
        self.gate_attempts[gate_id] = self.gate_attempts.get(gate_id, 1) + 1
        return self.gate_instance_id(gate_id)

    def append_gate_record(self, record: GateRecord) -> None:
        self.gate_log.append(record)
        self.touch()

    def gate_records(self, instance_id: str) -> list[GateRecord]:
        return [r for r in self.gate_log if r.instance_id == instance_id]

    def gate_records_for(self, gate_id: str) -> list[GateRecord]:
        return [r for r in self.gate_log if r.gate_id == gate_id]

    def resolved_gate(self, instance_id: str) -> GateRecord | None:
        for record in self.gate_records(instance_id):
            if record.result.resolved:
                return record
        return None

    # ── logs ─────────────────────────────────────────────────────────────

    def log(self, level: str, category: str, message: str, **details: Any) -> LogEntry:
        entry = LogEntry(
            timestamp=time.time(),
            level=level,
            category=category,
            message=message,
            details=details,
            phase=self.current_phase_name,
        )
        self.logs.append(entry)
        self.touch()
        return entry

    def logs_filtered(
        self,
        level: str | None = None,
        category: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        """Execution log filtered by minimum level, category and time.

        ``level`` is a minimum: "warning" returns warnings and errors.
        ``limit`` keeps the most recent entries.
        """
        entries = self.logs
        if level is not None:
            floor = LOG_LEVELS.index(level)
            entries = [e for e in entries if LOG_LEVELS.index(e.level) >= floor]
        if category is not None:
            entries = [e for e in entries if e.category == category]
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return list(entries)

    # ── dashboard ────────────────────────────────────────────────────────

    @property
    def progress(self) -> dict[str, int]:
        if self.status == RunStatus.COMPLETED:
            phases_completed = len(self.phase_names)
        else:
            phases_completed = len({
                p.index for p in self.phases
                if p.exited_at is not None and p.index < self.current_phase_index
            })
        skills_completed = len({
            (inv.phase_index, inv.skill_id)
            for inv in self.invocations
            if inv.status == InvocationStatus.SUCCEEDED
        })
        return {
            "phasesCompleted": phases_completed,
            "phasesTotal": len(self.phase_names),
            "skillsCompleted": skills_completed,
            "skillsTotal": self.skills_total,
        }

    # ── serialization ────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "id": self.id,
            "loop_id": self.loop_id,
            "loop_version": self.loop_version,
            "phase_names": list(self.phase_names),
            "skills_total": self.skills_total,
            "project": self.project,
            "status": self.status.value,
            "current_phase_index": self.current_phase_index,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "estimated_duration": self.estimated_duration,
            "catalog_generation": self.catalog_generation,
            "block_reason": self.block_reason.value if self.block_reason else None,
            "block_detail": self.block_detail,
            "paused_from": self.paused_from.value if self.paused_from else None,
            "abort_reason": self.abort_reason,
            "error": self.error,
            "phases": [asdict(p) for p in self.phases],
            "invocations": [inv.to_dict() for inv in self.invocations],
            "deliverables": dict(self.deliverables),
            "gate_log": [r.to_dict() for r in self.gate_log],
            "gate_attempts": dict(self.gate_attempts),
            "logs": [asdict(e) for e in self.logs],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Run":
        """Create an instance from a deserialized dict."""
        return cls(
            id=data["id"],
            loop_id=data["loop_id"],
            loop_version=data["loop_version"],
            phase_names=list(data["phase_names"]),
            skills_total=int(data.get("skills_total", 0)),
            project=data.get("project", ""),
            status=RunStatus(data.get("status", "pending")),
            current_phase_index=int(data.get("current_phase_index", 0)),
            started_at=float(data.get("started_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
            completed_at=data.get("completed_at"),
            estimated_duration=data.get("estimated_duration"),
            catalog_generation=int(data.get("catalog_generation", 0)),
            block_reason=BlockReason(data["block_reason"]) if data.get("block_reason") else None,
            block_detail=data.get("block_detail"),
            paused_from=RunStatus(data["paused_from"]) if data.get("paused_from") else None,
            abort_reason=data.get("abort_reason"),
            error=data.get("error"),
            phases=[PhaseRecord(**p) for p in data.get("phases", [])],
            invocations=[SkillInvocation.from_dict(i) for i in data.get("invocations", [])],
            deliverables=dict(data.get("deliverables", {})),
            gate_log=[GateRecord.from_dict(r) for r in data.get("gate_log", [])],
            gate_attempts={k: int(v) for k, v in data.get("gate_attempts", {}).items()},
            logs=[LogEntry(**e) for e in data.get("logs", [])],
            metadata=dict(data.get("metadata", {})),
        )
