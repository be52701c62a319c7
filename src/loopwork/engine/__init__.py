"""
Execution Engine — runs, their state and the runners that execute skills.
"""

from .engine import ExecutionEngine
from .persistence import RunStore
from .runner import HandlerRegistry, SkillContext, SkillOutcome, SkillRunner
from .state import (
    BlockReason,
    InvocationStatus,
    LogEntry,
    PhaseRecord,
    Run,
    RunStatus,
    SkillInvocation,
)

__all__ = [
    "BlockReason",
    "ExecutionEngine",
    "HandlerRegistry",
    "InvocationStatus",
    "LogEntry",
    "PhaseRecord",
    "Run",
    "RunStatus",
    "RunStore",
    "SkillContext",
    "SkillInvocation",
    "SkillOutcome",
    "SkillRunner",
]
