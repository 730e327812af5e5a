"""Data-driven validation and outcome rules."""

from .engine import (
    EvaluationResult,
    OutcomeClass,
    OutcomeDecision,
    OutcomeRule,
    Operator,
    RuleEngine,
    RuleSet,
    ValidationRule,
)

__all__ = [
    "EvaluationResult",
    "Operator",
    "OutcomeClass",
    "OutcomeDecision",
    "OutcomeRule",
    "RuleEngine",
    "RuleSet",
    "ValidationRule",
]
