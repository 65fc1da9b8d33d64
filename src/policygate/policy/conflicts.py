"""
Conflict Detector: static diagnostics over the active rule set.

The scan looks at every unordered pair of rules whose scopes overlap and
reports:

    overlapping-conditions  same effect, equivalent conditions (warning)
    priority-inversion      a higher-ranked allow shadows a narrower,
                            lower-ranked deny (warning)
    opposing-effects        allow and deny can match the same request
                            (critical)

Conditions are compared structurally. A top-level && chain is treated as a
set of canonical conjuncts; "A implies B" is approximated by "B's conjuncts
are a subset of A's". Satisfiability is checked conservatively: two rules
are assumed satisfiable together unless their simple constraints on a
shared variable contradict (x == 1 vs x == 2, x > 10 vs x < 5, ...).

The scan is a diagnostic only. Its output never changes which rules
evaluate or how decisions combine.
"""

import itertools
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from policygate.errors import ConditionParseError
from policygate.logging import get_logger
from policygate.policy.expression import (
    MIRRORED_OPERATORS,
    ArrayLiteral,
    Compare,
    Expression,
    Literal,
    Membership,
    Node,
    Not,
    Var,
    compile_condition,
    conjuncts,
    render,
)
from policygate.schema import (
    ConflictInfo,
    ConflictSeverity,
    ConflictType,
    Rule,
    RuleEffect,
    RuleScope,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Analysis:
    """Pre-computed structural facts about one rule's condition."""

    rule: Rule
    canonical: str
    conjuncts: frozenset[str]
    variables: frozenset[str]
    constraints: tuple[tuple[str, str, Any], ...]


def _constraint(node: Node) -> tuple[str, str, Any] | None:
    """Reduce a conjunct to (path, op, value) when it is a simple test."""
    if isinstance(node, Var):
        return (node.path, "==", True)
    if isinstance(node, Not) and isinstance(node.operand, Var):
        return (node.operand.path, "==", False)
    if isinstance(node, Compare):
        left, right, op = node.left, node.right, node.op
        if isinstance(left, Literal) and isinstance(right, Var):
            left, right, op = right, left, MIRRORED_OPERATORS[op]
        if isinstance(left, Var) and isinstance(right, Literal):
            return (left.path, op, right.value)
        return None
    if isinstance(node, Membership):
        if isinstance(node.left, Var) and isinstance(node.right, ArrayLiteral):
            op = "not in" if node.negated else "in"
            return (node.left.path, op, node.right.items)
    return None


def _analyze(rule: Rule, expr: Expression) -> _Analysis:
    parts = conjuncts(expr.root)
    constraints = tuple(c for c in (_constraint(p) for p in parts) if c is not None)
    return _Analysis(
        rule=rule,
        canonical=render(expr.root),
        conjuncts=frozenset(render(p) for p in parts),
        variables=expr.variables,
        constraints=constraints,
    )


def _key(value: Any) -> str:
    """Hashable identity that keeps 1 and true apart but 1 and 1.0 together."""
    if _is_number(value):
        return f"number:{float(value)!r}"
    return f"{type(value).__name__}:{json.dumps(value, sort_keys=True)}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _satisfies(value: Any, op: str, bound: Any) -> bool:
    if op == "==":
        return _key(value) == _key(bound)
    if op == "!=":
        return _key(value) != _key(bound)
    if op == "in":
        return _key(value) in {_key(item) for item in bound}
    if op == "not in":
        return _key(value) not in {_key(item) for item in bound}
    if not (_is_number(value) and _is_number(bound)):
        # Unknown ordering between kinds; assume it can hold
        return True
    if op == "<":
        return value < bound
    if op == "<=":
        return value <= bound
    if op == ">":
        return value > bound
    return value >= bound


def _contradicts(constraints: Iterable[tuple[str, str, Any]]) -> bool:
    """True when the constraints on some single variable cannot all hold."""
    by_path: dict[str, list[tuple[str, Any]]] = {}
    for path, op, value in constraints:
        by_path.setdefault(path, []).append((op, value))

    for tests in by_path.values():
        equals = {_key(v): v for op, v in tests if op == "=="}
        if len(equals) > 1:
            return True
        if equals:
            pinned = next(iter(equals.values()))
            if not all(_satisfies(pinned, op, v) for op, v in tests):
                return True
            continue

        memberships = [{_key(i): i for i in v} for op, v in tests if op == "in"]
        if memberships:
            candidates = dict(memberships[0])
            for other in memberships[1:]:
                candidates = {k: v for k, v in candidates.items() if k in other}
            survivors = [
                v for v in candidates.values()
                if all(_satisfies(v, op, bound) for op, bound in tests)
            ]
            if not survivors:
                return True
            continue

        lower: tuple[float, bool] | None = None  # (bound, inclusive)
        upper: tuple[float, bool] | None = None
        for op, v in tests:
            if not _is_number(v):
                continue
            if op in (">", ">="):
                candidate = (v, op == ">=")
                if lower is None or v > lower[0] or (v == lower[0] and not candidate[1]):
                    lower = candidate
            elif op in ("<", "<="):
                candidate = (v, op == "<=")
                if upper is None or v < upper[0] or (v == upper[0] and not candidate[1]):
                    upper = candidate
        if lower and upper:
            if lower[0] > upper[0]:
                return True
            if lower[0] == upper[0] and not (lower[1] and upper[1]):
                return True
    return False


def scopes_overlap(a: Rule, b: Rule) -> bool:
    """Whether some request could be in scope for both rules."""
    if a.scope == RuleScope.GLOBAL or b.scope == RuleScope.GLOBAL:
        return True
    if a.target is None or b.target is None:
        return True
    if a.scope == b.scope:
        return a.target == b.target
    # An agent-targeted and a task-targeted rule can meet on one request
    return True


class ConflictDetector:
    """
    Scans a rule set for conflicting pairs.

    Usage:
        detector = ConflictDetector()
        for conflict in detector.scan(index.rules_in_order()):
            print(conflict.type, conflict.message)
    """

    def __init__(self, max_depth: int = 32, max_length: int = 4096) -> None:
        self.max_depth = max_depth
        self.max_length = max_length

    def scan(self, rules: Sequence[Rule]) -> list[ConflictInfo]:
        """
        Return conflicts among rules given in evaluation order.

        Rules whose condition does not parse are skipped; they can never
        be admitted into the rule index anyway.
        """
        analyses = []
        for rule in rules:
            try:
                expr = compile_condition(rule.condition, self.max_depth, self.max_length)
            except ConditionParseError:
                logger.warning("conflict_scan_skipped_rule", rule_id=rule.id)
                continue
            analyses.append(_analyze(rule, expr))

        conflicts = []
        for first, second in itertools.combinations(analyses, 2):
            if not scopes_overlap(first.rule, second.rule):
                continue
            conflict = self._classify(first, second)
            if conflict is not None:
                conflicts.append(conflict)

        if conflicts:
            logger.info(
                "conflicts_detected",
                total=len(conflicts),
                critical=sum(c.severity == ConflictSeverity.CRITICAL for c in conflicts),
            )
        return conflicts

    def _classify(self, first: _Analysis, second: _Analysis) -> ConflictInfo | None:
        a, b = first.rule, second.rule

        if a.effect == b.effect:
            if first.canonical == second.canonical:
                return ConflictInfo(
                    rule1=a,
                    rule2=b,
                    type=ConflictType.OVERLAPPING_CONDITIONS,
                    severity=ConflictSeverity.WARNING,
                    message=(
                        f"Rules '{a.name}' and '{b.name}' both {a.effect.value} "
                        f"on the same condition; one of them is redundant"
                    ),
                )
            return None

        allow, deny = (first, second) if a.effect == RuleEffect.ALLOW else (second, first)
        allow_rank = (allow.rule.scope.specificity, allow.rule.priority)
        deny_rank = (deny.rule.scope.specificity, deny.rule.priority)
        if allow_rank > deny_rank and deny.conjuncts > allow.conjuncts:
            return ConflictInfo(
                rule1=allow.rule,
                rule2=deny.rule,
                type=ConflictType.PRIORITY_INVERSION,
                severity=ConflictSeverity.WARNING,
                message=(
                    f"Deny rule '{deny.rule.name}' (priority {deny.rule.priority}) is a "
                    f"narrower case of allow rule '{allow.rule.name}' "
                    f"(priority {allow.rule.priority}) but is ordered after it"
                ),
            )

        related = (
            first.canonical == second.canonical
            or first.conjuncts <= second.conjuncts
            or second.conjuncts <= first.conjuncts
            or bool(first.variables & second.variables)
        )
        if related and not _contradicts(first.constraints + second.constraints):
            return ConflictInfo(
                rule1=a,
                rule2=b,
                type=ConflictType.OPPOSING_EFFECTS,
                severity=ConflictSeverity.CRITICAL,
                message=(
                    f"Rules '{a.name}' ({a.effect.value}) and '{b.name}' "
                    f"({b.effect.value}) can match the same request"
                ),
            )
        return None
