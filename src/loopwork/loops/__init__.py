"""
Loop templates — ordered, gated workflow definitions and their versioned store.
"""

from .store import LoopTemplateStore
from .template import GateKind, GateSpec, LoopTemplate, PhaseSpec, SkillRef

__all__ = [
    "GateKind",
    "GateSpec",
    "LoopTemplate",
    "LoopTemplateStore",
    "PhaseSpec",
    "SkillRef",
]
