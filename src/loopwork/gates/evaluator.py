"""
Gate Evaluator — decides whether a phase may be exited.

Automatic gates evaluate their criteria expression (and required
deliverables) against the run's deliverables, then run memory, then process
memory. Human gates stay PENDING until a decision is recorded for the
current gate instance.

Every evaluation is appended to ``run.gate_log`` as an immutable GateRecord.
Once an instance is resolved (PASS or FAIL) re-evaluating it returns the
stored record. A new instance (``<gate_id>#<n>``) is only opened by the
engine's remediation path.
"""

import hashlib
import json
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from ..errors import GateAlreadyResolved
from ..loops.template import GateSpec
from ..memory.store import PROCESS_SCOPE, MemoryStore, MemoryTier
from .criteria import parse_criteria

if TYPE_CHECKING:
    from ..engine.state import Run

logger = structlog.get_logger()

_UNSET = object()

_DECISION_ALIASES = {
    "pass": "pass",
    "approve": "pass",
    "approved": "pass",
    "fail": "fail",
    "reject": "fail",
    "rejected": "fail",
}


class GateOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"

    @property
    def resolved(self) -> bool:
        return self != GateOutcome.PENDING


@dataclass(frozen=True)
class GateDecision:
    """An external approval or rejection of a human gate."""

    gate_id: str
    decision: str
    rationale: str = ""
    approver: str | None = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        normalized = _DECISION_ALIASES.get(str(self.decision).strip().lower())
        if normalized is None:
            raise ValueError(f"decision must be 'pass' or 'fail', got {self.decision!r}")
        object.__setattr__(self, "decision", normalized)

    @property
    def outcome(self) -> GateOutcome:
        return GateOutcome(self.decision)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "GateDecision":
        """Build from an operator payload (``gateId`` or ``gate_id`` keys)."""
        gate_id = payload.get("gateId", payload.get("gate_id"))
        if not gate_id:
            raise ValueError("decision payload needs a gateId")
        kwargs: dict[str, Any] = {
            "gate_id": str(gate_id),
            "decision": payload.get("decision", ""),
            "rationale": payload.get("rationale", "") or "",
            "approver": payload.get("approver"),
        }
        if payload.get("timestamp") is not None:
            kwargs["timestamp"] = float(payload["timestamp"])
        return cls(**kwargs)


@dataclass(frozen=True)
class GateRecord:
    """One immutable gate evaluation."""

    instance_id: str
    gate_id: str
    phase: str
    kind: str
    result: GateOutcome
    timestamp: float
    reason: str | None = None
    blocking: bool = True
    fingerprint: str | None = None
    approver: str | None = None
    rationale: str = ""
    decided_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["result"] = self.result.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GateRecord":
        valid_fields = {f for f in cls.__dataclass_fields__}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        filtered["result"] = GateOutcome(filtered["result"])
        return cls(**filtered)


def lookup_path(data: Mapping[str, Any], name: str) -> Any:
    """Resolve ``name`` in ``data``: exact key first, then a dotted path.

    Raises:
        KeyError: If nothing matches.
    """
    if name in data:
        return data[name]
    current: Any = data
    for part in name.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            raise KeyError(name)
    return current


class GateEvaluator:
    """Evaluates gate specs against a run and keeps its gate log."""

    def __init__(self, memory: MemoryStore | None = None):
        self.memory = memory
        self.log = logger.bind(component="gate_evaluator")

    # ── resolution ───────────────────────────────────────────────────────

    def resolver(self, run: "Run"):
        """Return a name -> value resolver over deliverables, run and process memory."""

        def resolve(name: str) -> Any:
            try:
                return lookup_path(run.deliverables, name)
            except KeyError:
                pass
            if self.memory is not None:
                for tier, scope in ((MemoryTier.RUN, run.id), (MemoryTier.PROCESS, PROCESS_SCOPE)):
                    value = self.memory.get(tier, scope, name, default=_UNSET)
                    if value is not _UNSET:
                        return value
            raise KeyError(name)

        return resolve

    def fingerprint(self, gate: GateSpec, run: "Run") -> str:
        """Hash of every input the automatic gate looks at."""
        resolve = self.resolver(run)
        names = list(gate.deliverables)
        compiled = gate.compiled or (parse_criteria(gate.criteria) if gate.criteria else None)
        if compiled is not None:
            names.extend(compiled.references)
        inputs: dict[str, Any] = {}
        for name in sorted(set(names)):
            try:
                inputs[name] = resolve(name)
            except KeyError:
                inputs[name] = "<missing>"
        payload = json.dumps(inputs, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    # ── evaluation ───────────────────────────────────────────────────────

    def evaluate(self, gate: GateSpec, run: "Run") -> GateOutcome:
        """PASS, FAIL or PENDING for the current instance of ``gate``."""
        return self.check(gate, run).result

    def check(self, gate: GateSpec, run: "Run") -> GateRecord:
        """Evaluate the current gate instance and return its log record."""
        instance_id = run.gate_instance_id(gate.id)
        resolved = run.resolved_gate(instance_id)
        if resolved is not None:
            return resolved

        phase = run.current_phase_name or ""
        if gate.is_human:
            existing = run.gate_records(instance_id)
            if existing:
                return existing[-1]
            record = GateRecord(
                instance_id=instance_id,
                gate_id=gate.id,
                phase=phase,
                kind=gate.kind.value,
                result=GateOutcome.PENDING,
                timestamp=time.time(),
                reason="awaiting approval",
                blocking=gate.blocking,
            )
            run.append_gate_record(record)
            self.log.info("gate.pending", run_id=run.id, gate=gate.id, instance=instance_id)
            return record

        resolve = self.resolver(run)
        missing = [name for name in gate.deliverables if not _has(resolve, name)]
        if missing:
            passed, reason = False, f"missing deliverables: {', '.join(missing)}"
        elif gate.criteria:
            compiled = gate.compiled or parse_criteria(gate.criteria)
            result = compiled.evaluate(resolve)
            passed, reason = result.passed, result.reason
        else:
            passed, reason = True, None

        record = GateRecord(
            instance_id=instance_id,
            gate_id=gate.id,
            phase=phase,
            kind=gate.kind.value,
            result=GateOutcome.PASS if passed else GateOutcome.FAIL,
            timestamp=time.time(),
            reason=reason,
            blocking=gate.blocking,
            fingerprint=self.fingerprint(gate, run),
        )
        run.append_gate_record(record)
        self.log.info(
            "gate.evaluated",
            run_id=run.id,
            gate=gate.id,
            instance=instance_id,
            result=record.result.value,
            reason=reason,
        )
        return record

    def record_decision(self, gate: GateSpec, run: "Run", decision: GateDecision) -> GateRecord:
        """Resolve the current human gate instance with an operator decision.

        Replaying a decision already recorded returns the stored record.

        Raises:
            GateAlreadyResolved: The instance was resolved with a different decision.
        """
        for record in run.gate_records_for(gate.id):
            if (
                record.result == decision.outcome
                and record.approver == decision.approver
                and record.decided_at == decision.timestamp
            ):
                return record

        instance_id = run.gate_instance_id(gate.id)
        resolved = run.resolved_gate(instance_id)
        if resolved is not None:
            if resolved.result == decision.outcome:
                return resolved
            raise GateAlreadyResolved(instance_id, resolved.result.value)

        record = GateRecord(
            instance_id=instance_id,
            gate_id=gate.id,
            phase=run.current_phase_name or "",
            kind=gate.kind.value,
            result=decision.outcome,
            timestamp=time.time(),
            reason=None if decision.outcome == GateOutcome.PASS else "rejected",
            blocking=gate.blocking,
            approver=decision.approver,
            rationale=decision.rationale,
            decided_at=decision.timestamp,
        )
        run.append_gate_record(record)
        self.log.info(
            "gate.decided",
            run_id=run.id,
            gate=gate.id,
            instance=instance_id,
            decision=decision.decision,
            approver=decision.approver,
        )
        return record

    def expire(self, gate: GateSpec, run: "Run", timeout: float) -> GateRecord | None:
        """Resolve a still-pending human gate as FAIL after ``timeout`` seconds."""
        instance_id = run.gate_instance_id(gate.id)
        if run.resolved_gate(instance_id) is not None:
            return None
        record = GateRecord(
            instance_id=instance_id,
            gate_id=gate.id,
            phase=run.current_phase_name or "",
            kind=gate.kind.value,
            result=GateOutcome.FAIL,
            timestamp=time.time(),
            reason=f"approval timed out after {timeout:g}s",
            blocking=gate.blocking,
        )
        run.append_gate_record(record)
        self.log.warning("gate.timed_out", run_id=run.id, gate=gate.id, timeout=timeout)
        return record


def _has(resolve, name: str) -> bool:
    try:
        resolve(name)
    except KeyError:
        return False
    return True
