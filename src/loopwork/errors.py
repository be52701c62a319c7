"""
Error taxonomy for loopwork.

Load-time errors (ParseError, CycleError, VersionConflict) abort only the
load that raised them; previously loaded catalogs and templates stay intact.
Run-time errors (SkillExecutionFailure, GateRejection) are recorded in the
run log and drive a state transition instead of bubbling up to callers.
"""

from typing import Any


class LoopworkError(Exception):
    """Base exception for loopwork."""


class ConfigError(LoopworkError):
    """Invalid configuration file or override."""


# ── Load-time ─────────────────────────────────────────────────────────────


class ParseError(LoopworkError):
    """A skill descriptor or loop definition could not be parsed."""

    def __init__(self, message: str, origin: str | None = None):
        self.origin = origin
        self.message = message
        prefix = f"{origin}: " if origin else ""
        super().__init__(f"{prefix}{message}")


class CycleError(LoopworkError):
    """The depends_on relation contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle: " + " -> ".join(self.cycle))


class VersionConflict(LoopworkError):
    """Two units were loaded with the same (id, version) pair."""

    def __init__(self, unit_id: str, version: str, kind: str = "skill"):
        self.unit_id = unit_id
        self.version = version
        self.kind = kind
        super().__init__(f"Duplicate {kind} '{unit_id}' at version {version}")


class SkillNotFound(LoopworkError, LookupError):
    """No skill in the catalog satisfies the requested id and constraint."""

    def __init__(self, skill_id: str, constraint: str | None = None):
        self.skill_id = skill_id
        self.constraint = constraint
        suffix = f" matching '{constraint}'" if constraint else ""
        super().__init__(f"Skill '{skill_id}'{suffix} not found")


class TemplateNotFound(LoopworkError, LookupError):
    """No loop template with the requested id/version is loaded."""

    def __init__(self, loop_id: str, version: str | None = None):
        self.loop_id = loop_id
        self.version = version
        suffix = f"@{version}" if version else ""
        super().__init__(f"Loop template '{loop_id}{suffix}' not found")


# ── Run-time ──────────────────────────────────────────────────────────────


class RunNotFound(LoopworkError, LookupError):
    """Unknown run id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")


class InvalidTransition(LoopworkError):
    """The requested operation is not allowed from the run's current state."""

    def __init__(self, run_id: str, status: str, operation: str):
        self.run_id = run_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} run '{run_id}' while it is {status}")


class SkillExecutionFailure(LoopworkError):
    """A skill failed after exhausting its retries."""

    def __init__(self, skill_id: str, attempts: int, error: str | None = None):
        self.skill_id = skill_id
        self.attempts = attempts
        self.error = error
        super().__init__(
            f"Skill '{skill_id}' failed after {attempts} attempt(s): {error or 'unknown error'}"
        )


class PermanentSkillError(LoopworkError):
    """Raised by a skill runner to signal a failure that must not be retried."""


class GateRejection(LoopworkError):
    """A human operator rejected a gate."""

    def __init__(self, gate_id: str, rationale: str = "", approver: str | None = None):
        self.gate_id = gate_id
        self.rationale = rationale
        self.approver = approver
        super().__init__(f"Gate '{gate_id}' rejected: {rationale or 'no rationale'}")


class GateNotFound(LoopworkError, LookupError):
    """The gate id does not belong to the run's current phase."""

    def __init__(self, gate_id: str, run_id: str | None = None):
        self.gate_id = gate_id
        self.run_id = run_id
        super().__init__(f"Gate '{gate_id}' not found for run '{run_id}'")


class GateAlreadyResolved(LoopworkError):
    """A different decision was submitted for a gate instance that is already resolved."""

    def __init__(self, instance_id: str, result: str):
        self.instance_id = instance_id
        self.result = result
        super().__init__(f"Gate instance '{instance_id}' is already resolved as {result}")


# ── Memory ────────────────────────────────────────────────────────────────


class MemoryNotFound(LoopworkError, KeyError):
    """No entry for the key in the requested tier/scope."""

    def __init__(self, tier: str, scope_id: str, key: str):
        self.tier = tier
        self.scope_id = scope_id
        self.key = key
        super().__init__(f"No memory entry '{key}' in {tier}:{scope_id}")

    def __str__(self) -> str:
        return self.args[0]


class MemoryVisibilityViolation(LoopworkError):
    """A reader tried to access a scope it cannot see."""

    def __init__(self, tier: str, scope_id: str, reader: Any):
        self.tier = tier
        self.scope_id = scope_id
        self.reader = reader
        super().__init__(f"{reader!r} cannot read {tier}:{scope_id}")
