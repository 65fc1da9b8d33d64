"""
Pytest configuration and fixtures for PolicyGate tests.

This module provides shared fixtures used across unit and integration
tests. Factories are exposed as fixtures so tests can build rules,
policies and contexts with only the fields they care about.
"""

import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generator

import pytest

from policygate.schema import EvaluationContext, Policy, Rule


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_rule() -> Callable[..., Rule]:
    """Factory for rules; only id is required."""

    def _make(
        rule_id: str,
        effect: str = "deny",
        condition: str = "true",
        scope: str = "global",
        priority: int = 0,
        **extra: Any,
    ) -> Rule:
        return Rule(
            id=rule_id,
            name=extra.pop("name", rule_id.replace("-", " ").title()),
            effect=effect,
            condition=condition,
            scope=scope,
            priority=priority,
            **extra,
        )

    return _make


@pytest.fixture
def make_policy() -> Callable[..., Policy]:
    """Factory for policies holding the given rules."""

    def _make(policy_id: str, *rules: Rule, **extra: Any) -> Policy:
        return Policy(
            id=policy_id,
            name=extra.pop("name", policy_id),
            rules=list(rules),
            **extra,
        )

    return _make


@pytest.fixture
def make_context() -> Callable[..., EvaluationContext]:
    """Factory for evaluation contexts with a fixed timestamp."""

    def _make(agent_id: str = "a1", **fields: Any) -> EvaluationContext:
        fields.setdefault("timestamp", 1_700_000_000_000)
        return EvaluationContext(agent_id=agent_id, **fields)

    return _make


@pytest.fixture
def transfer_context(make_context: Callable[..., EvaluationContext]) -> EvaluationContext:
    """The canonical large-transfer request."""
    return make_context(
        "a1",
        task_id="t-100",
        task_name="transfer_funds",
        task={"name": "transfer_funds", "resource": "payments"},
        payload={"amount": 50000},
        metadata={"role": "user"},
    )


@pytest.fixture
def sample_policy_yaml() -> str:
    """Return a finance policy YAML for testing."""
    return """
id: finance-controls
name: Finance controls
description: Limits on money movement
rules:
  - id: deny-large-transfer
    name: Deny large transfers
    scope: global
    priority: 100
    effect: deny
    condition: payload.amount > 10000
    actions: [log, notify]
  - id: allow-payments
    name: Allow payments work
    scope: global
    priority: 10
    effect: allow
    condition: task.resource == "payments"
    actions: [log]
"""


@pytest.fixture
def sample_context_yaml() -> str:
    """Return an evaluation context YAML for testing."""
    return """
agent_id: a1
task_id: t-100
task_name: transfer_funds
task:
  resource: payments
payload:
  amount: 50000
metadata:
  role: user
"""
