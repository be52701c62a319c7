"""
Loop templates — immutable, versioned workflow definitions.

A template is an ordered list of phases. Each phase names the skills it
requires and, optionally, the gate that must be satisfied before the next
phase can start.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..gates.criteria import Criteria


class GateKind(str, Enum):
    AUTOMATIC = "automatic"
    HUMAN = "human"


@dataclass(frozen=True)
class GateSpec:
    """Exit checkpoint of a phase.

    Attributes:
        id: Gate id, unique within the template.
        kind: automatic (criteria over deliverables/memory) or human (approval).
        criteria: Boolean expression, e.g. "championStrength > 30". Automatic only.
        blocking: If False the gate is advisory: a FAIL is logged and the run advances.
        deliverables: Deliverable names that must exist for the gate to pass.
        timeout: Seconds a human gate may wait before the run fails. None = forever.
    """

    id: str
    kind: GateKind = GateKind.HUMAN
    criteria: str | None = None
    blocking: bool = True
    deliverables: tuple[str, ...] = ()
    timeout: float | None = None
    name: str = ""
    compiled: "Criteria | None" = field(default=None, compare=False, repr=False)

    @property
    def is_human(self) -> bool:
        return self.kind == GateKind.HUMAN


@dataclass(frozen=True)
class SkillRef:
    """Reference to a skill from a phase, with an optional version constraint."""

    skill_id: str
    constraint: str | None = None

    @classmethod
    def parse(cls, raw: str) -> "SkillRef":
        """Parse "skill-id" or "skill-id@^1.2"."""
        skill_id, sep, constraint = str(raw).strip().partition("@")
        return cls(skill_id=skill_id.strip(), constraint=constraint.strip() if sep else None)

    def __str__(self) -> str:
        return f"{self.skill_id}@{self.constraint}" if self.constraint else self.skill_id


@dataclass(frozen=True)
class PhaseSpec:
    name: str
    index: int
    skills: tuple[SkillRef, ...]
    gate: GateSpec | None = None
    parallel: bool = False
    description: str = ""

    @property
    def skill_ids(self) -> list[str]:
        return [ref.skill_id for ref in self.skills]


@dataclass(frozen=True)
class LoopTemplate:
    """A versioned loop definition. Immutable per version."""

    id: str
    version: str
    phases: tuple[PhaseSpec, ...]
    name: str = ""
    description: str = ""
    estimated_duration: float | None = None
    category: str = ""
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)
    origin: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.id, self.version)

    @property
    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]

    def phase(self, index: int) -> PhaseSpec:
        return self.phases[index]

    def gates(self) -> list[GateSpec]:
        return [p.gate for p in self.phases if p.gate is not None]

    def skill_count(self) -> int:
        return sum(len(p.skills) for p in self.phases)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "version": self.version,
            "description": self.description,
            "phases": [
                {
                    "name": p.name,
                    "skills": [str(s) for s in p.skills],
                    "gate": p.gate.id if p.gate else None,
                    "parallel": p.parallel,
                }
                for p in self.phases
            ],
            "skill_count": self.skill_count(),
            "estimated_duration": self.estimated_duration,
        }
