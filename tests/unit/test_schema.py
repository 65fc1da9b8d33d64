"""
Unit tests for schema definitions.

Tests cover:
- Rule field validation
- Policy and context defaults
- Immutability and unknown-field rejection
- YAML loading helpers
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from policygate.schema import (
    EvaluationContext,
    Policy,
    Rule,
    RuleAction,
    RuleEffect,
    RuleScope,
    load_context,
    load_context_from_string,
    load_policies,
    load_policies_from_string,
)


# =============================================================================
# Rule Tests
# =============================================================================


class TestRule:
    """Tests for Rule model."""

    def test_minimal_rule(self) -> None:
        """Rule with only required fields."""
        rule = Rule(id="r1", name="R1", effect="deny", condition="true")
        assert rule.scope == RuleScope.GLOBAL
        assert rule.priority == 0
        assert rule.effect == RuleEffect.DENY
        assert rule.actions == []
        assert rule.target is None

    def test_scope_specificity(self) -> None:
        """Task is the narrowest scope, global the broadest."""
        assert RuleScope.TASK.specificity > RuleScope.AGENT.specificity > RuleScope.GLOBAL.specificity

    def test_integral_float_priority_coerced(self) -> None:
        """2.0 is accepted as priority 2."""
        rule = Rule(id="r1", name="R1", effect="allow", condition="true", priority=2.0)
        assert rule.priority == 2
        assert isinstance(rule.priority, int)

    @pytest.mark.parametrize("priority", [1.5, True, float("inf"), float("nan")])
    def test_non_integer_priority_rejected(self, priority) -> None:
        """Fractions, booleans and non-finite values are not priorities."""
        with pytest.raises(ValidationError):
            Rule(id="r1", name="R1", effect="allow", condition="true", priority=priority)

    def test_negative_priority_allowed(self) -> None:
        """Priorities may be negative."""
        rule = Rule(id="r1", name="R1", effect="allow", condition="true", priority=-5)
        assert rule.priority == -5

    @pytest.mark.parametrize("condition", ["", "   ", "\n\t"])
    def test_blank_condition_rejected(self, condition: str) -> None:
        """A condition must contain something."""
        with pytest.raises(ValidationError):
            Rule(id="r1", name="R1", effect="deny", condition=condition)

    def test_unknown_effect_rejected(self) -> None:
        """Only allow and deny are effects."""
        with pytest.raises(ValidationError):
            Rule(id="r1", name="R1", effect="maybe", condition="true")

    def test_actions_deduplicated(self) -> None:
        """Repeated actions collapse to their first occurrence."""
        rule = Rule(
            id="r1",
            name="R1",
            effect="deny",
            condition="true",
            actions=["notify", "log", "notify"],
        )
        assert rule.actions == [RuleAction.NOTIFY, RuleAction.LOG]

    def test_unknown_action_rejected(self) -> None:
        """Actions are limited to log, notify and override."""
        with pytest.raises(ValidationError):
            Rule(id="r1", name="R1", effect="deny", condition="true", actions=["email"])

    def test_rule_is_immutable(self) -> None:
        """Rules are frozen."""
        rule = Rule(id="r1", name="R1", effect="deny", condition="true")
        with pytest.raises(ValidationError):
            rule.priority = 5  # type: ignore

    def test_extra_fields_rejected(self) -> None:
        """Unknown fields are rejected."""
        with pytest.raises(ValidationError):
            Rule(id="r1", name="R1", effect="deny", condition="true", when="x")  # type: ignore


# =============================================================================
# Policy / Context Tests
# =============================================================================


class TestPolicy:
    """Tests for Policy model."""

    def test_defaults(self) -> None:
        """New policies are enabled at version 1."""
        policy = Policy(id="p1", name="P1")
        assert policy.enabled is True
        assert policy.version == "1"
        assert policy.rules == []
        assert policy.created_at.tzinfo is not None


class TestEvaluationContext:
    """Tests for EvaluationContext model."""

    def test_minimal_context(self) -> None:
        """Only agent_id is required."""
        context = EvaluationContext(agent_id="a1")
        assert context.payload == {}
        assert context.metadata is None
        assert context.simulation_mode is False
        assert context.timestamp > 0

    def test_nested_payload(self) -> None:
        """Payloads hold nested JSON values."""
        context = EvaluationContext(
            agent_id="a1",
            payload={"customer": {"tags": ["vip", 1, None, True]}},
        )
        assert context.payload["customer"]["tags"] == ["vip", 1, None, True]

    def test_non_json_payload_rejected(self) -> None:
        """Arbitrary objects cannot ride in a payload."""
        with pytest.raises(ValidationError):
            EvaluationContext(agent_id="a1", payload={"fn": object()})

    def test_negative_timeout_rejected(self) -> None:
        """Metadata timeouts are non-negative."""
        with pytest.raises(ValidationError):
            EvaluationContext(agent_id="a1", metadata={"timeout": -1})


# =============================================================================
# Loader Tests
# =============================================================================


class TestLoaders:
    """Tests for YAML loading helpers."""

    def test_single_policy_mapping(self, sample_policy_yaml: str) -> None:
        """A file may hold one policy."""
        policies = load_policies_from_string(sample_policy_yaml)

        assert [p.id for p in policies] == ["finance-controls"]
        assert [r.id for r in policies[0].rules] == ["deny-large-transfer", "allow-payments"]
        assert policies[0].rules[0].actions == [RuleAction.LOG, RuleAction.NOTIFY]

    def test_list_of_policies(self) -> None:
        """A file may hold a list of policies."""
        policies = load_policies_from_string("- id: a\n  name: A\n- id: b\n  name: B\n")
        assert [p.id for p in policies] == ["a", "b"]

    def test_policies_key(self) -> None:
        """A file may wrap policies under a "policies" key."""
        policies = load_policies_from_string("policies:\n  - id: a\n    name: A\n")
        assert [p.id for p in policies] == ["a"]

    def test_empty_document(self) -> None:
        """An empty file has no policies."""
        assert load_policies_from_string("") == []

    def test_scalar_rejected(self) -> None:
        """A scalar document is not a policy file."""
        with pytest.raises(ValueError):
            load_policies_from_string("just text")

    def test_load_policies_file(self, temp_dir: Path, sample_policy_yaml: str) -> None:
        """load_policies() reads from disk."""
        path = temp_dir / "finance.yaml"
        path.write_text(sample_policy_yaml)
        assert load_policies(path)[0].name == "Finance controls"

    def test_load_policies_missing(self, temp_dir: Path) -> None:
        """A missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_policies(temp_dir / "missing.yaml")

    def test_load_context(self, temp_dir: Path, sample_context_yaml: str) -> None:
        """Contexts load from YAML files."""
        path = temp_dir / "context.yaml"
        path.write_text(sample_context_yaml)

        context = load_context(path)

        assert context.agent_id == "a1"
        assert context.payload == {"amount": 50000}
        assert context.metadata.role == "user"

    def test_load_context_json(self) -> None:
        """JSON is valid YAML, so JSON contexts load too."""
        context = load_context_from_string('{"agent_id": "a9", "payload": {"n": 1}}')
        assert context.agent_id == "a9"
        assert context.payload == {"n": 1}
