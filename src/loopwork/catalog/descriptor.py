"""
Skill descriptors — parsing of SKILL.md documents into immutable records.

A skill document is a YAML frontmatter header followed by a free-text body:

    ---
    name: champion-scoring
    version: 1.2.0
    phase: VALIDATE
    category: specialized
    depends_on: [stakeholder-map]
    deliverables: [championStrength]
    tags: [sales]
    ---
    # Champion scoring
    ...

The header is validated by a pydantic model; missing fields get explicit
defaults and a missing phase is inferred from keywords in the text.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..errors import ParseError
from .phases import Phase, SkillCategory, infer_phase
from .versions import is_valid_version

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n(.*))?$", re.DOTALL)
_SKILL_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

PhaseSource = Literal["declared", "inferred", "unknown"]


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    raise ValueError(f"expected a list, got {type(value).__name__}")


class SkillHeader(BaseModel):
    """Validated frontmatter of a skill document."""

    name: str | None = None
    description: str = ""
    version: str = "1.0.0"
    phase: Phase | None = None
    category: SkillCategory = SkillCategory.CUSTOM
    depends_on: list[str] = Field(default_factory=list)
    deliverables: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    author: str | None = None

    model_config = {"extra": "ignore", "populate_by_name": True}

    @field_validator("version", mode="before")
    @classmethod
    def _check_version(cls, value: Any) -> str:
        value = "1.0.0" if value is None else str(value)
        if not is_valid_version(value):
            raise ValueError(f"invalid version '{value}'")
        return value

    @field_validator("phase", mode="before")
    @classmethod
    def _check_phase(cls, value: Any) -> Phase | None:
        if value is None or value == "":
            return None
        return Phase.parse(value)

    @field_validator("category", mode="before")
    @classmethod
    def _check_category(cls, value: Any) -> SkillCategory:
        if value is None or value == "":
            return SkillCategory.CUSTOM
        return SkillCategory(str(value).strip().lower())

    @field_validator("depends_on", "deliverables", "tags", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> list[str]:
        return _as_list(value)


@dataclass(frozen=True)
class SkillDescriptor:
    """One reusable unit of work. Immutable once loaded."""

    id: str
    version: str = "1.0.0"
    description: str = ""
    phase: Phase | None = None
    category: SkillCategory = SkillCategory.CUSTOM
    depends_on: frozenset[str] = frozenset()
    deliverables: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    author: str | None = None
    body: str = field(default="", repr=False, compare=False)
    origin: str = ""
    phase_source: PhaseSource = "declared"
    phase_candidates: tuple[Phase, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.id, self.version)

    @property
    def phase_ambiguous(self) -> bool:
        """True when the phase was inferred and the inference was not unique."""
        return self.phase_source != "declared" and len(self.phase_candidates) != 1

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "description": self.description,
            "phase": self.phase.value if self.phase else None,
            "category": self.category.value,
            "depends_on": sorted(self.depends_on),
            "deliverables": list(self.deliverables),
            "tags": list(self.tags),
            "phase_source": self.phase_source,
        }


def split_frontmatter(text: str, origin: str | None = None) -> tuple[dict[str, Any], str]:
    """Split a document into (header dict, body).

    Raises:
        ParseError: If the frontmatter is not valid YAML or not a mapping.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise ParseError(f"invalid YAML header: {e}", origin) from e
    if meta is None:
        meta = {}
    if not isinstance(meta, dict):
        raise ParseError(
            f"header must be a mapping, not {type(meta).__name__}", origin
        )
    return meta, match.group(2) or ""


def parse_skill_document(
    text: str,
    origin: str = "",
    default_name: str | None = None,
) -> SkillDescriptor:
    """Parse a skill document into a SkillDescriptor.

    Args:
        text: Full document (frontmatter + body).
        origin: Where the document came from, for error messages.
        default_name: Id used when the header has no name (usually the
            skill directory name).

    Raises:
        ParseError: If the header is malformed or fails validation.
    """
    meta, body = split_frontmatter(text, origin or None)
    if "dependsOn" in meta and "depends_on" not in meta:
        meta["depends_on"] = meta.pop("dependsOn")

    try:
        header = SkillHeader.model_validate(meta)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'header'}: {err['msg']}"
            for err in e.errors()
        )
        raise ParseError(f"invalid header ({problems})", origin or None) from e

    skill_id = (header.name or default_name or "").strip()
    if not skill_id:
        raise ParseError("header has no name and no default name was given", origin or None)
    if not _SKILL_ID_RE.match(skill_id):
        raise ParseError(f"invalid skill id '{skill_id}'", origin or None)

    phase = header.phase
    phase_source: PhaseSource = "declared"
    candidates: tuple[Phase, ...] = (phase,) if phase else ()
    if phase is None:
        inference = infer_phase(f"{header.description}\n{body}")
        phase = inference.phase
        candidates = inference.candidates
        phase_source = "inferred" if phase else "unknown"

    return SkillDescriptor(
        id=skill_id,
        version=header.version,
        description=header.description,
        phase=phase,
        category=header.category,
        depends_on=frozenset(d.strip() for d in header.depends_on if d.strip()),
        deliverables=tuple(header.deliverables),
        tags=tuple(header.tags),
        author=header.author,
        body=body.strip(),
        origin=origin,
        phase_source=phase_source,
        phase_candidates=candidates,
    )
