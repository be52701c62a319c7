"""
LoopTemplateStore — loads, validates and versions loop definitions.

Definitions are YAML (or JSON) documents:

    id: deal-loop
    version: 1.0.0
    estimated_duration: 3600
    phases:
      - name: ASSESS
        skills: [champion-scoring]
        gate:
          id: assess-gate
          kind: automatic
          criteria: "championStrength > 30"
      - name: IDENTIFY
        skills: [stakeholder-map@^1.0]
        parallel: true
    gates:                      # alternative, top-level form
      - id: identify-gate
        after_phase: IDENTIFY
        approval_type: human

Every referenced skill must resolve in the catalog the template is bound
to, otherwise the load fails. Templates are immutable per version; loading
the same (id, version) twice is a VersionConflict.
"""

import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..catalog.catalog import Catalog
from ..catalog.descriptor import SkillDescriptor
from ..catalog.phases import Phase
from ..catalog.registry import CatalogRegistry
from ..catalog.versions import is_valid_version, parse_version, pick_latest
from ..errors import CycleError, ParseError, SkillNotFound, TemplateNotFound, VersionConflict
from ..gates.criteria import parse_criteria
from .template import GateKind, GateSpec, LoopTemplate, PhaseSpec, SkillRef

logger = structlog.get_logger()

LOOP_FILENAMES = ("loop.yaml", "loop.yml", "loop.json")


# ── Definition schema ────────────────────────────────────────────────────


class GateDefinition(BaseModel):
    id: str | None = None
    name: str = ""
    kind: Literal["automatic", "auto", "conditional", "human"] | None = None
    approval_type: Literal["automatic", "auto", "conditional", "human"] | None = None
    criteria: str | None = None
    blocking: bool | None = None
    required: bool | None = None
    deliverables: list[str] = Field(default_factory=list)
    timeout: float | None = Field(default=None, gt=0)
    after_phase: str | None = None

    model_config = {"extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def _camel_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            for camel, snake in (("afterPhase", "after_phase"), ("approvalType", "approval_type")):
                if camel in data and snake not in data:
                    data[snake] = data.pop(camel)
        return data

    def resolved_kind(self) -> GateKind:
        raw = self.kind or self.approval_type
        if raw is None:
            raw = "automatic" if self.criteria else "human"
        return GateKind.HUMAN if raw == "human" else GateKind.AUTOMATIC

    def resolved_blocking(self) -> bool:
        if self.blocking is not None:
            return self.blocking
        if self.required is not None:
            return self.required
        return True


class PhaseDefinition(BaseModel):
    name: str
    skills: list[str]
    gate: GateDefinition | None = None
    parallel: bool = False
    description: str = ""
    required: bool = True

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("phase name must not be empty")
        return value

    @field_validator("skills")
    @classmethod
    def _non_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("phase must require at least one skill")
        return value


class LoopDefinition(BaseModel):
    id: str
    version: str = "1.0.0"
    name: str = ""
    description: str = ""
    category: str = ""
    estimated_duration: float | None = Field(default=None, gt=0)
    phases: list[PhaseDefinition]
    gates: list[GateDefinition] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def _camel_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict) and "estimatedDuration" in data:
            data = dict(data)
            data.setdefault("estimated_duration", data.pop("estimatedDuration"))
        return data

    @field_validator("version", mode="before")
    @classmethod
    def _check_version(cls, value: Any) -> str:
        value = str(value)
        if not is_valid_version(value):
            raise ValueError(f"invalid version '{value}'")
        return value

    @field_validator("phases")
    @classmethod
    def _at_least_one(cls, value: list[PhaseDefinition]) -> list[PhaseDefinition]:
        if not value:
            raise ValueError("loop must define at least one phase")
        names = [p.name for p in value]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate phase names: {', '.join(duplicates)}")
        return value


# ── Store ────────────────────────────────────────────────────────────────


def _format_validation(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'definition'}: {err['msg']}"
        for err in e.errors()
    )


class LoopTemplateStore:
    """Versioned in-memory store of loop templates."""

    def __init__(self, catalogs: CatalogRegistry | None = None):
        """Initialise the store.

        Args:
            catalogs: Registry whose current snapshot validates loaded
                templates when no explicit catalog is passed to load().
        """
        self.catalogs = catalogs
        self._templates: dict[str, dict[str, LoopTemplate]] = {}
        self._lock = threading.Lock()
        self.log = logger.bind(component="loop_template_store")

    # ── loading ──────────────────────────────────────────────────────────

    def load(
        self,
        definition: Mapping[str, Any],
        catalog: Catalog | None = None,
        origin: str = "<memory>",
    ) -> LoopTemplate:
        """Validate a definition and register the resulting template.

        Raises:
            ParseError: Malformed definition, bad criteria, or unresolvable skills.
            CycleError: A phase's required skills form a dependency cycle.
            VersionConflict: The (id, version) pair is already loaded.
        """
        try:
            parsed = LoopDefinition.model_validate(dict(definition))
        except ValidationError as e:
            raise ParseError(f"invalid loop definition ({_format_validation(e)})", origin) from e

        template = self._build(parsed, origin)
        bound = catalog
        if bound is None and self.catalogs is not None:
            bound = self.catalogs.snapshot()
        if bound is not None:
            self._validate_against(template, bound)

        with self._lock:
            versions = self._templates.setdefault(template.id, {})
            if template.version in versions:
                raise VersionConflict(template.id, template.version, kind="loop")
            versions[template.version] = template

        self.log.info(
            "loop.loaded",
            loop=template.id,
            version=template.version,
            phases=len(template.phases),
            gates=len(template.gates()),
        )
        return template

    def load_text(
        self,
        text: str,
        catalog: Catalog | None = None,
        origin: str = "<memory>",
    ) -> LoopTemplate:
        """Load a YAML/JSON document."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ParseError(f"invalid YAML: {e}", origin) from e
        if not isinstance(data, dict):
            raise ParseError("loop definition must be a mapping", origin)
        return self.load(data, catalog=catalog, origin=origin)

    def load_file(self, path: Path | str, catalog: Catalog | None = None) -> LoopTemplate:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Loop definition not found: {path}")
        return self.load_text(path.read_text(encoding="utf-8"), catalog=catalog, origin=str(path))

    def load_dir(
        self,
        loops_dir: Path | str,
        catalog: Catalog | None = None,
    ) -> tuple[list[LoopTemplate], list[Exception]]:
        """Load every ``<loops_dir>/<loop>/loop.yaml`` (or ``*.yaml`` file).

        A failing definition is reported and skipped; the others still load.

        Returns:
            (loaded templates, errors)
        """
        loaded: list[LoopTemplate] = []
        errors: list[Exception] = []
        root = Path(loops_dir)
        if not root.is_dir():
            return loaded, errors

        candidates: list[Path] = []
        for entry in sorted(root.iterdir()):
            if entry.is_dir():
                candidates.extend(entry / n for n in LOOP_FILENAMES if (entry / n).is_file())
            elif entry.suffix in (".yaml", ".yml", ".json"):
                candidates.append(entry)

        for path in candidates:
            try:
                loaded.append(self.load_file(path, catalog=catalog))
            except (ParseError, VersionConflict, CycleError) as e:
                self.log.warning("loop.load_error", path=str(path), error=str(e))
                errors.append(e)
        return loaded, errors

    # ── lookup ───────────────────────────────────────────────────────────

    def get(self, loop_id: str, version: str | None = None) -> LoopTemplate:
        """Return the highest version matching ``version`` (a constraint).

        Raises:
            TemplateNotFound
        """
        versions = self._templates.get(loop_id)
        if not versions:
            raise TemplateNotFound(loop_id, version)
        try:
            chosen = pick_latest(list(versions), version)
        except ValueError:
            chosen = None
        if chosen is None:
            raise TemplateNotFound(loop_id, version)
        return versions[chosen]

    def versions(self, loop_id: str) -> list[str]:
        return sorted(self._templates.get(loop_id, {}), key=parse_version)

    def list_templates(self) -> list[LoopTemplate]:
        """Latest version of every loop, sorted by id."""
        return [self.get(loop_id) for loop_id in sorted(self._templates)]

    def __contains__(self, loop_id: object) -> bool:
        return loop_id in self._templates

    # ── internals ────────────────────────────────────────────────────────

    def _build(self, parsed: LoopDefinition, origin: str) -> LoopTemplate:
        gates_by_phase: dict[str, GateDefinition] = {}
        phase_names = {p.name for p in parsed.phases}
        for gate in parsed.gates:
            if not gate.after_phase:
                raise ParseError(f"top-level gate '{gate.id}' needs after_phase", origin)
            if gate.after_phase not in phase_names:
                raise ParseError(
                    f"gate '{gate.id}' refers to unknown phase '{gate.after_phase}'", origin
                )
            if gate.after_phase in gates_by_phase:
                raise ParseError(f"phase '{gate.after_phase}' has more than one gate", origin)
            gates_by_phase[gate.after_phase] = gate

        phases: list[PhaseSpec] = []
        gate_ids: set[str] = set()
        for index, phase_def in enumerate(parsed.phases):
            gate_def = phase_def.gate
            if gate_def is not None and phase_def.name in gates_by_phase:
                raise ParseError(f"phase '{phase_def.name}' has more than one gate", origin)
            gate_def = gate_def or gates_by_phase.get(phase_def.name)

            gate = None
            if gate_def is not None:
                gate = self._build_gate(gate_def, phase_def.name, origin)
                if gate.id in gate_ids:
                    raise ParseError(f"duplicate gate id '{gate.id}'", origin)
                gate_ids.add(gate.id)

            refs = tuple(SkillRef.parse(s) for s in phase_def.skills)
            ids = [r.skill_id for r in refs]
            if len(set(ids)) != len(ids):
                raise ParseError(f"phase '{phase_def.name}' lists a skill twice", origin)

            phases.append(PhaseSpec(
                name=phase_def.name,
                index=index,
                skills=refs,
                gate=gate,
                parallel=phase_def.parallel,
                description=phase_def.description,
            ))

        return LoopTemplate(
            id=parsed.id,
            version=parsed.version,
            phases=tuple(phases),
            name=parsed.name or parsed.id,
            description=parsed.description,
            estimated_duration=parsed.estimated_duration,
            category=parsed.category,
            metadata=dict(parsed.metadata),
            origin=origin,
        )

    @staticmethod
    def _build_gate(gate_def: GateDefinition, phase_name: str, origin: str) -> GateSpec:
        kind = gate_def.resolved_kind()
        compiled = None
        if gate_def.criteria:
            if kind == GateKind.HUMAN:
                raise ParseError(f"human gate after '{phase_name}' cannot have criteria", origin)
            try:
                compiled = parse_criteria(gate_def.criteria)
            except ParseError as e:
                raise ParseError(e.message, origin) from e
        return GateSpec(
            id=gate_def.id or f"{phase_name.lower()}-gate",
            kind=kind,
            criteria=gate_def.criteria,
            blocking=gate_def.resolved_blocking(),
            deliverables=tuple(gate_def.deliverables),
            timeout=gate_def.timeout,
            name=gate_def.name,
            compiled=compiled,
        )

    def _validate_against(self, template: LoopTemplate, catalog: Catalog) -> None:
        missing: list[str] = []
        pinned: list[list[SkillDescriptor]] = []
        for phase in template.phases:
            pinned.append([])
            for ref in phase.skills:
                try:
                    descriptor = catalog.get(ref.skill_id, ref.constraint)
                except SkillNotFound:
                    missing.append(str(ref))
                    continue
                pinned[-1].append(descriptor)
                if phase.name.upper() in Phase.__members__ and descriptor.phase is not None \
                        and descriptor.phase.value != phase.name.upper():
                    self.log.debug(
                        "loop.phase_tag_mismatch",
                        loop=template.id,
                        phase=phase.name,
                        skill=ref.skill_id,
                        skill_phase=descriptor.phase.value,
                    )
        if missing:
            raise ParseError(
                f"loop '{template.id}' requires skills missing from the catalog: "
                + ", ".join(missing),
                template.origin,
            )
        for phase, descriptors in zip(template.phases, pinned):
            catalog.resolve_order(phase.skill_ids, pinned=descriptors)
