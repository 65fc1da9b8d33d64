"""
Decision Engine for PolicyGate.

The Decision Engine answers one question per request: may this agent
task proceed? It walks the rule index in order and combines the rules
whose conditions hold.

Design Principles:
    - Never raises: every failure is folded into the result
    - Fail-closed per rule: a condition that cannot be evaluated makes
      that rule non-triggering, and evaluation moves on
    - Deny-overrides: the first triggered deny (in index order) decides,
      no matter how many allow rules also triggered
    - Default-allow: with no triggered rule at all, the request proceeds
    - Predictable: same context + same index = same decision

How it works:
    1. Snapshot the ordered rules
    2. Build the variable namespace from the context once
    3. Evaluate each applicable rule's condition
    4. Combine: first triggered deny wins, else allow
    5. Union the actions of every triggered rule, first-seen order
"""

import time
from collections.abc import Sequence

from policygate.errors import ConditionError
from policygate.logging import get_logger
from policygate.policy.expression import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_LENGTH,
    compile_condition,
)
from policygate.policy.index import RuleIndex
from policygate.policy.namespace import build_namespace
from policygate.schema import (
    EvaluationContext,
    EvaluationResult,
    Rule,
    RuleAction,
    RuleEffect,
    RuleError,
    RuleScope,
    now_ms,
)

logger = get_logger(__name__)

DEFAULT_ALLOW_REASON = "No rule matched - default allow"


def rule_applies(rule: Rule, context: EvaluationContext) -> bool:
    """Whether a rule's scope target admits this context."""
    if rule.scope == RuleScope.GLOBAL or rule.target is None:
        return True
    if rule.scope == RuleScope.AGENT:
        return context.agent_id == rule.target
    return context.task_name == rule.target


class DecisionEngine:
    """
    Evaluates contexts against a rule index.

    Usage:
        engine = DecisionEngine(index)
        result = engine.evaluate(context)
        if not result.allowed:
            # block the task; result.reason says why

    Many threads may call evaluate() at once; each call only reads the
    index snapshot it took at the start.
    """

    def __init__(
        self,
        index: RuleIndex,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.index = index
        self.max_depth = max_depth
        self.max_length = max_length

    def evaluate(self, context: EvaluationContext) -> EvaluationResult:
        """Decide a request against the current index snapshot."""
        return self.evaluate_rules(self.index.rules_in_order(), context)

    def evaluate_rules(
        self,
        rules: Sequence[Rule],
        context: EvaluationContext,
    ) -> EvaluationResult:
        """
        Decide a request against an explicit, already-ordered rule list.

        Args:
            rules: Rules in evaluation order
            context: The request

        Returns:
            EvaluationResult; never raises
        """
        started = time.perf_counter()
        try:
            result = self._decide(rules, context)
        except Exception as e:
            # Rule-level failures are handled in _decide; this is a defect
            logger.exception("evaluation_failed", agent_id=context.agent_id)
            result = EvaluationResult(
                allowed=False,
                reason=f"Evaluation failed: {e}",
                simulation_mode=context.simulation_mode,
                rule_errors=[
                    RuleError(rule_id="*", error_type=type(e).__name__, message=str(e))
                ],
            )

        duration_ms = (time.perf_counter() - started) * 1000
        return result.model_copy(update={"duration_ms": duration_ms, "timestamp": now_ms()})

    def _decide(self, rules: Sequence[Rule], context: EvaluationContext) -> EvaluationResult:
        namespace = build_namespace(context)
        triggered: list[Rule] = []
        errors: list[RuleError] = []
        deciding_deny: Rule | None = None

        for rule in rules:
            if not rule_applies(rule, context):
                continue
            try:
                expr = compile_condition(rule.condition, self.max_depth, self.max_length)
                matched = expr.evaluate(namespace)
            except ConditionError as e:
                errors.append(
                    RuleError(rule_id=rule.id, error_type=type(e).__name__, message=e.message)
                )
                logger.warning(
                    "rule_skipped",
                    rule_id=rule.id,
                    error_type=type(e).__name__,
                    detail=e.message,
                )
                continue

            if matched:
                triggered.append(rule)
                if rule.effect == RuleEffect.DENY and deciding_deny is None:
                    deciding_deny = rule

        actions: dict[RuleAction, None] = {}
        for rule in triggered:
            for action in rule.actions:
                actions.setdefault(action, None)

        effects = {rule.effect for rule in triggered}
        conflict = RuleEffect.ALLOW in effects and RuleEffect.DENY in effects

        if deciding_deny is not None:
            deciding: Rule | None = deciding_deny
            allowed = False
            reason = f"Denied by rule '{deciding_deny.name}' ({deciding_deny.scope.value} scope)"
        elif triggered:
            deciding = triggered[0]
            allowed = True
            reason = f"Allowed by rule '{deciding.name}' ({deciding.scope.value} scope)"
        else:
            deciding = None
            allowed = True
            reason = DEFAULT_ALLOW_REASON

        if not allowed:
            logger.info(
                "task_denied",
                agent_id=context.agent_id,
                task_id=context.task_id,
                rule_id=deciding.id if deciding else None,
                simulation=context.simulation_mode,
            )

        return EvaluationResult(
            allowed=allowed,
            reason=reason,
            triggered_rules=triggered,
            applied_actions=list(actions),
            simulation_mode=context.simulation_mode,
            conflict_detected=conflict,
            deciding_rule_id=deciding.id if deciding else None,
            rule_errors=errors,
        )
