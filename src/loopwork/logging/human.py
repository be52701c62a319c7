"""
Human Log — formatter and helper for run traceability logs.

Produces readable output an operator can follow run by run:

    ── run run-20250101-120000-ab12cd · deal-loop@1.0.0 ──
    ▸ Phase ASSESS (1/2)
      skill champion-scoring → OK
      gate assess-gate → PASS
    ▸ Phase IDENTIFY (2/2)
      gate identify-gate → waiting for approval
    ⏸ Blocked at IDENTIFY: awaiting_approval
"""

import logging
import sys
from typing import Any

from .levels import HUMAN

_RECORD_ATTRS = frozenset({
    "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName", "processName",
    "process", "message", "taskName", "name", "event",
})


class HumanFormatter:
    """Turns structured run events into one line of readable text each."""

    def format_event(self, event: str, **kw: Any) -> str | None:
        match event:

            # ── RUN ─────────────────────────────────────────────────────
            case "run.started":
                return (
                    f"\n── run {kw.get('run_id', '?')} · "
                    f"{kw.get('loop', '?')}@{kw.get('version', '?')} ──"
                )

            case "run.completed":
                return f"\n✓ Completed ({kw.get('phases', '?')} phases, {_secs(kw.get('duration'))})"

            case "run.failed":
                return f"\n✗ Failed: {kw.get('error', 'unknown error')}"

            case "run.aborted":
                return f"\n✗ Aborted: {kw.get('reason') or 'no reason given'}"

            case "run.blocked":
                detail = kw.get("detail")
                suffix = f" ({detail})" if detail else ""
                return f"⏸ Blocked at {kw.get('phase', '?')}: {kw.get('reason', '?')}{suffix}"

            case "run.paused":
                return f"⏸ Paused at {kw.get('phase', '?')}"

            case "run.resumed":
                return f"▶ Resumed at {kw.get('phase', '?')}"

            # ── PHASES ──────────────────────────────────────────────────
            case "phase.entered":
                index = kw.get("index", 0)
                return f"▸ Phase {kw.get('phase', '?')} ({index + 1}/{kw.get('total', '?')})"

            # ── SKILLS ──────────────────────────────────────────────────
            case "skill.completed":
                return f"  skill {kw.get('skill', '?')} → OK"

            case "skill.retrying":
                return (
                    f"  skill {kw.get('skill', '?')} → failed, retry "
                    f"{kw.get('attempt', '?')}/{kw.get('max_attempts', '?')}"
                )

            case "skill.exhausted":
                return f"  skill {kw.get('skill', '?')} → FAILED: {kw.get('error', '?')}"

            # ── GATES ───────────────────────────────────────────────────
            case "gate.result":
                result = str(kw.get("result", "?")).upper()
                reason = kw.get("reason")
                advisory = "" if kw.get("blocking", True) else " (advisory)"
                tail = f": {reason}" if reason and result != "PASS" else ""
                return f"  gate {kw.get('gate', '?')} → {result}{advisory}{tail}"

            case "gate.awaiting":
                return f"  gate {kw.get('gate', '?')} → waiting for approval"

            case _:
                return None


class HumanLogHandler(logging.Handler):
    """Logging handler that formats HUMAN events only.

    Accepts both structlog event dicts (``record.msg`` is the event dict
    when wrapped for ProcessorFormatter) and plain stdlib records whose
    extra attributes carry the event fields. Writes to stderr so stdout
    pipes stay clean.
    """

    def __init__(self, stream=None) -> None:
        super().__init__(level=HUMAN)
        self.stream = stream or sys.stderr
        self.formatter_inst = HumanFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if record.levelno != HUMAN:
                return

            if isinstance(record.msg, dict):
                kw = {k: v for k, v in record.msg.items() if not k.startswith("_")}
                event = str(kw.pop("event", ""))
                for key in ("level", "logger", "timestamp"):
                    kw.pop(key, None)
            else:
                event = getattr(record, "event", None) or record.getMessage()
                kw = {
                    k: v for k, v in record.__dict__.items()
                    if not k.startswith("_") and k not in _RECORD_ATTRS
                }

            formatted = self.formatter_inst.format_event(event, **kw)
            if formatted is not None:
                self.stream.write(formatted + "\n")
                self.stream.flush()
        except Exception:
            self.handleError(record)


class HumanLog:
    """Typed helper for emitting HUMAN-level events.

    Events go through a plain stdlib logger as event dicts, so they reach
    HumanLogHandler whatever the structlog configuration is.

    Usage:
        hlog = HumanLog(logging.getLogger("loopwork.engine"))
        hlog.phase_entered("run-1", "ASSESS", 0, 2)
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _emit(self, event: str, **kw: Any) -> None:
        self._logger.log(HUMAN, {"event": event, **kw})

    def run_started(self, run_id: str, loop: str, version: str) -> None:
        self._emit("run.started", run_id=run_id, loop=loop, version=version)

    def run_completed(self, run_id: str, phases: int, duration: float) -> None:
        self._emit("run.completed", run_id=run_id, phases=phases, duration=duration)

    def run_failed(self, run_id: str, error: str) -> None:
        self._emit("run.failed", run_id=run_id, error=error)

    def run_aborted(self, run_id: str, reason: str | None) -> None:
        self._emit("run.aborted", run_id=run_id, reason=reason)

    def run_blocked(self, run_id: str, phase: str | None, reason: str, detail: str | None = None) -> None:
        self._emit("run.blocked", run_id=run_id, phase=phase, reason=reason, detail=detail)

    def run_paused(self, run_id: str, phase: str | None) -> None:
        self._emit("run.paused", run_id=run_id, phase=phase)

    def run_resumed(self, run_id: str, phase: str | None) -> None:
        self._emit("run.resumed", run_id=run_id, phase=phase)

    def phase_entered(self, run_id: str, phase: str, index: int, total: int) -> None:
        self._emit("phase.entered", run_id=run_id, phase=phase, index=index, total=total)

    def skill_completed(self, run_id: str, skill: str) -> None:
        self._emit("skill.completed", run_id=run_id, skill=skill)

    def skill_retrying(self, run_id: str, skill: str, attempt: int, max_attempts: int) -> None:
        self._emit(
            "skill.retrying",
            run_id=run_id, skill=skill, attempt=attempt, max_attempts=max_attempts,
        )

    def skill_exhausted(self, run_id: str, skill: str, error: str | None) -> None:
        self._emit("skill.exhausted", run_id=run_id, skill=skill, error=error)

    def gate_result(self, run_id: str, gate: str, result: str, reason: str | None, blocking: bool) -> None:
        self._emit(
            "gate.result",
            run_id=run_id, gate=gate, result=result, reason=reason, blocking=blocking,
        )

    def gate_awaiting(self, run_id: str, gate: str) -> None:
        self._emit("gate.awaiting", run_id=run_id, gate=gate)


def _secs(value: Any) -> str:
    if not isinstance(value, (int, float)):
        return "?"
    if value < 60:
        return f"{value:.1f}s"
    return f"{value / 60:.1f}m"
