"""
Phase and category enums for skill descriptors, plus the keyword heuristic
used when a descriptor header omits its phase.

The heuristic is best-effort: when more than one phase (or none) matches,
the inference is flagged as ambiguous so it can be confirmed by hand.
"""

from dataclasses import dataclass
from enum import Enum


class Phase(str, Enum):
    """The ten phases a skill can declare affinity with."""

    INIT = "INIT"
    SCAFFOLD = "SCAFFOLD"
    IMPLEMENT = "IMPLEMENT"
    TEST = "TEST"
    VERIFY = "VERIFY"
    VALIDATE = "VALIDATE"
    DOCUMENT = "DOCUMENT"
    REVIEW = "REVIEW"
    SHIP = "SHIP"
    COMPLETE = "COMPLETE"

    @classmethod
    def parse(cls, value: object) -> "Phase":
        """Case-insensitive lookup. Raises ValueError for unknown names."""
        normalized = str(value).strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"unknown phase '{value}' (valid: {valid})") from None


class SkillCategory(str, Enum):
    CORE = "core"
    INFRA = "infra"
    META = "meta"
    SPECIALIZED = "specialized"
    CUSTOM = "custom"


# Checked in declaration order; the first matching phase wins.
PHASE_INDICATORS: dict[Phase, tuple[str, ...]] = {
    Phase.INIT: ("initialization", "requirements", "specification", "feature spec"),
    Phase.SCAFFOLD: ("scaffold", "architecture", "project structure", "boilerplate"),
    Phase.IMPLEMENT: ("implement", "coding", "development", "build feature"),
    Phase.TEST: ("test generation", "unit test", "test coverage"),
    Phase.VERIFY: ("verification", "code review", "quality check"),
    Phase.VALIDATE: ("validation", "integration test", "security audit"),
    Phase.DOCUMENT: ("documentation", "readme", "api docs"),
    Phase.REVIEW: ("review", "refactor", "code quality"),
    Phase.SHIP: ("deploy", "release", "distribution"),
    Phase.COMPLETE: ("completion", "handoff", "retrospective"),
}


@dataclass(frozen=True)
class PhaseInference:
    """Result of inferring a phase from free text."""

    phase: Phase | None
    candidates: tuple[Phase, ...] = ()

    @property
    def ambiguous(self) -> bool:
        """True when zero or several phases matched."""
        return len(self.candidates) != 1


def infer_phase(text: str) -> PhaseInference:
    """Guess a phase from keywords in a skill body.

    Args:
        text: Description and/or body of the skill.

    Returns:
        PhaseInference with the first matching phase and every candidate.
    """
    lowered = text.lower()
    candidates = tuple(
        phase
        for phase, indicators in PHASE_INDICATORS.items()
        if any(indicator in lowered for indicator in indicators)
    )
    return PhaseInference(
        phase=candidates[0] if candidates else None,
        candidates=candidates,
    )
