"""
Phase gates — the criteria language and the gate evaluator.
"""

from .criteria import Criteria, CriteriaResult, parse_criteria
from .evaluator import GateDecision, GateEvaluator, GateOutcome, GateRecord

__all__ = [
    "Criteria",
    "CriteriaResult",
    "GateDecision",
    "GateEvaluator",
    "GateOutcome",
    "GateRecord",
    "parse_criteria",
]
