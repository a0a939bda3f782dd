"""
Policy

Versioned allow/deny rules and the decision engine that evaluates them.
"""

from .rules import PolicyChange, PolicyRule, PolicySet, RuleSnapshot, RuleStore
from .engine import NO_MATCHING_POLICY, PolicyDecision, PolicyDecisionEngine

__all__ = [
    "PolicyChange",
    "PolicyRule",
    "PolicySet",
    "RuleSnapshot",
    "RuleStore",
    "NO_MATCHING_POLICY",
    "PolicyDecision",
    "PolicyDecisionEngine",
]
