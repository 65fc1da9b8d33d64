"""
Policy module for PolicyGate.

Key concepts:
    - Condition: a closed boolean expression over a flattened namespace
    - RuleIndex: the ordered, snapshot-published set of live rules
    - DecisionEngine: deny-overrides, default-allow decisioning
    - ConflictDetector: static diagnostics, never consulted by decisions
    - PolicyManager: validated, versioned mutations that keep the index
      and the conflict report current

The decision path must be:
    - Total: every evaluate() returns a result
    - Fail-closed per rule: broken conditions never trigger
    - Predictable: same inputs always produce same decisions
"""

from policygate.policy.conflicts import ConflictDetector
from policygate.policy.engine import DecisionEngine
from policygate.policy.expression import Expression, compile_condition, evaluate_condition
from policygate.policy.index import RuleIndex
from policygate.policy.manager import PolicyManager
from policygate.policy.namespace import build_namespace

__all__ = [
    "ConflictDetector",
    "DecisionEngine",
    "Expression",
    "PolicyManager",
    "RuleIndex",
    "build_namespace",
    "compile_condition",
    "evaluate_condition",
]
