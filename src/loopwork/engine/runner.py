"""
Skill runners — the boundary between the engine and whatever executes a skill.

The engine treats running a skill as an opaque, possibly long-running async
task. A runner receives a SkillContext and reports a SkillOutcome; raising
PermanentSkillError skips the remaining retries, any other exception is
treated as transient.
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..catalog.descriptor import SkillDescriptor
from ..memory.store import ScopedMemory


@dataclass
class SkillContext:
    """Everything a skill invocation may see."""

    run_id: str
    invocation_id: str
    skill: SkillDescriptor
    phase: str
    attempt: int
    memory: ScopedMemory
    deliverables: Mapping[str, Any] = field(default_factory=dict)
    project: str = ""

    @property
    def skill_id(self) -> str:
        return self.skill.id


@dataclass
class SkillOutcome:
    """Result reported by a runner.

    Attributes:
        success: Whether the skill produced its deliverables.
        deliverables: Named outputs merged into the run's deliverables.
        refs: Opaque references to produced artifacts (paths, URLs, ids).
        error: Failure description.
        permanent: A failure that must not be retried.
        promote: Invocation-scoped memory keys to keep at run scope.
    """

    success: bool
    deliverables: dict[str, Any] = field(default_factory=dict)
    refs: list[str] = field(default_factory=list)
    error: str | None = None
    permanent: bool = False
    promote: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls, deliverables: Mapping[str, Any] | None = None, **kwargs: Any) -> "SkillOutcome":
        return cls(success=True, deliverables=dict(deliverables or {}), **kwargs)

    @classmethod
    def failed(cls, error: str, permanent: bool = False) -> "SkillOutcome":
        return cls(success=False, error=error, permanent=permanent)


class SkillRunner(Protocol):
    async def __call__(self, context: SkillContext) -> SkillOutcome: ...


SkillHandler = Callable[[SkillContext], Awaitable["SkillOutcome | Mapping[str, Any] | None"]]


class HandlerRegistry:
    """Runner that dispatches each skill id to a registered async handler.

    A handler may return a SkillOutcome, a mapping of deliverables (success),
    or None (success without deliverables).
    """

    def __init__(self, fallback: SkillHandler | None = None) -> None:
        self._handlers: dict[str, SkillHandler] = {}
        self.fallback = fallback

    def register(self, skill_id: str, handler: SkillHandler, allow_override: bool = False) -> None:
        """Register the handler for ``skill_id``.

        Raises:
            ValueError: If a handler already exists and allow_override=False.
        """
        if skill_id in self._handlers and not allow_override:
            raise ValueError(
                f"Handler for skill '{skill_id}' is already registered. "
                f"Use allow_override=True to overwrite."
            )
        self._handlers[skill_id] = handler

    def handler(self, skill_id: str) -> Callable[[SkillHandler], SkillHandler]:
        """Decorator form of register()."""

        def decorator(fn: SkillHandler) -> SkillHandler:
            self.register(skill_id, fn)
            return fn

        return decorator

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._handlers

    def list_skills(self) -> list[str]:
        return sorted(self._handlers)

    async def __call__(self, context: SkillContext) -> SkillOutcome:
        handler = self._handlers.get(context.skill_id, self.fallback)
        if handler is None:
            return SkillOutcome.failed(
                f"No handler registered for skill '{context.skill_id}'", permanent=True
            )
        result = await handler(context)
        if isinstance(result, SkillOutcome):
            return result
        if result is None:
            return SkillOutcome.ok()
        return SkillOutcome.ok(result)
