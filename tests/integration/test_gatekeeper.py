"""
Integration tests for the Gatekeeper.

Tests cover:
- End-to-end evaluation with audit recording
- Audit failures that never fail a decision
- Dry runs, overrides, per-policy log queries and violation review
- Live snapshot and subscriber delivery
- Loading policies from files and directories
- Concurrent evaluation during policy edits
"""

import threading
from pathlib import Path

import pytest

from policygate.config import Settings
from policygate.engine import Gatekeeper
from policygate.errors import InvalidConditionError
from policygate.schema import AuditAction, ConflictType, load_policies_from_string
from policygate.store import AuditDB


@pytest.fixture
def gatekeeper():
    """A gatekeeper without persistence."""
    gk = Gatekeeper()
    yield gk
    gk.close()


@pytest.fixture
def finance_gatekeeper(gatekeeper, sample_policy_yaml):
    """A gatekeeper with the finance policy loaded."""
    for policy in load_policies_from_string(sample_policy_yaml):
        gatekeeper.manager.add(policy)
    return gatekeeper


# =============================================================================
# Evaluation
# =============================================================================


class TestEvaluate:
    """Tests for evaluate()."""

    def test_large_transfer_denied(self, finance_gatekeeper, transfer_context) -> None:
        """A transfer above the limit is denied and audited."""
        result = finance_gatekeeper.evaluate(transfer_context)

        assert result.allowed is False
        assert result.deciding_rule_id == "deny-large-transfer"
        assert [r.id for r in result.triggered_rules] == ["deny-large-transfer", "allow-payments"]
        assert result.conflict_detected is True

        [entry] = finance_gatekeeper.trail.recent(10)
        assert entry.action == AuditAction.DENIED
        assert entry.agent_id == "a1"
        assert entry.violated_rules == ["deny-large-transfer"]

        stats = finance_gatekeeper.trail.statistics()
        assert stats.total_denied == 1
        assert stats.violations_by_rule == {"deny-large-transfer": 1}
        assert stats.violations_by_agent == {"a1": 1}

    def test_small_transfer_allowed(self, finance_gatekeeper, make_context) -> None:
        """Below the limit, the payments allow decides."""
        context = make_context(task={"resource": "payments"}, payload={"amount": 10})

        result = finance_gatekeeper.evaluate(context)

        assert result.allowed is True
        assert result.deciding_rule_id == "allow-payments"
        assert finance_gatekeeper.trail.recent(1)[0].action == AuditAction.ALLOWED

    def test_no_policies_default_allow(self, gatekeeper, make_context) -> None:
        """With nothing loaded every request is allowed, and still audited."""
        result = gatekeeper.evaluate(make_context())

        assert result.allowed is True
        assert result.triggered_rules == []
        assert len(gatekeeper.trail) == 1

    def test_repeated_evaluation_is_stable(self, finance_gatekeeper, transfer_context) -> None:
        """Evaluating twice gives the same decision and two entries."""
        first = finance_gatekeeper.evaluate(transfer_context)
        second = finance_gatekeeper.evaluate(transfer_context)

        timing = {"timestamp", "duration_ms"}
        assert first.model_dump(exclude=timing) == second.model_dump(exclude=timing)
        entries = finance_gatekeeper.trail.recent(10)
        assert len(entries) == 2
        assert entries[0].id != entries[1].id

    def test_rule_errors_recorded_on_entry(self, gatekeeper, make_rule, make_policy, make_context) -> None:
        """Skipped rules show up in the audit entry's error."""
        gatekeeper.manager.add(make_policy("p1", make_rule("needs-amount", condition="payload.amount > 1")))

        result = gatekeeper.evaluate(make_context(payload={}))

        assert result.allowed is True
        entry = gatekeeper.trail.recent(1)[0]
        assert entry.error is not None
        assert entry.error.startswith("needs-amount:")
        assert gatekeeper.trail.statistics().total_errors == 1

    def test_guest_read_scenario(self, gatekeeper, make_rule, make_policy, make_context) -> None:
        """A guest read is denied even though a broader allow outranks the deny."""
        gatekeeper.manager.add(make_policy(
            "access",
            make_rule("rule-a", effect="allow", priority=10, condition='task.action == "read"'),
            make_rule(
                "rule-b",
                effect="deny",
                priority=5,
                condition='task.action == "read" && agent.role == "guest"',
            ),
        ))

        guest = gatekeeper.evaluate(make_context(task={"action": "read"}, agent={"role": "guest"}))
        member = gatekeeper.evaluate(make_context(task={"action": "read"}, agent={"role": "member"}))

        assert guest.allowed is False
        assert guest.deciding_rule_id == "rule-b"
        assert member.allowed is True
        assert [c.type for c in gatekeeper.conflicts()] == [ConflictType.PRIORITY_INVERSION]


# =============================================================================
# Audit Failures
# =============================================================================


class TestAuditFailures:
    """Tests for decisions whose audit entry cannot be stored."""

    def test_closed_database_does_not_fail_evaluation(self, temp_dir: Path, make_context) -> None:
        """The decision is returned and the failure is counted."""
        db = AuditDB(temp_dir / "audit.db")
        with Gatekeeper(audit_db=db) as gatekeeper:
            db.close()

            result = gatekeeper.evaluate(make_context())

            assert result.allowed is True
            assert gatekeeper.audit_failures == 1
            assert len(gatekeeper.trail) == 0
            assert gatekeeper.health()["status"] == "degraded"

    def test_entries_mirrored_to_database(self, temp_dir: Path, transfer_context) -> None:
        """With a database path, every decision is persisted."""
        path = temp_dir / "audit.db"
        with Gatekeeper(audit_db=path) as gatekeeper:
            gatekeeper.evaluate(transfer_context)
            gatekeeper.evaluate(transfer_context)

        with AuditDB(path) as db:
            assert db.count_entries() == 2

    def test_database_from_settings(self, temp_dir: Path, make_context) -> None:
        """settings.audit_db_path opens an owned database."""
        path = temp_dir / "from-settings.db"
        with Gatekeeper(Settings(audit_db_path=path)) as gatekeeper:
            gatekeeper.evaluate(make_context())
            assert gatekeeper.db is not None

        assert path.exists()


# =============================================================================
# Dry Runs and Overrides
# =============================================================================


class TestTestPolicy:
    """Tests for test_policy()."""

    def test_dry_run_leaves_state_alone(self, finance_gatekeeper, make_rule, make_policy, make_context) -> None:
        """The candidate policy is evaluated alone and nothing is recorded."""
        candidate = make_policy("candidate", make_rule("deny-all"), enabled=False)

        result = finance_gatekeeper.test_policy(candidate, make_context())

        assert result.allowed is False
        assert result.simulation_mode is True
        assert result.deciding_rule_id == "deny-all"
        assert len(finance_gatekeeper.trail) == 0
        assert "candidate" not in finance_gatekeeper.manager
        assert "deny-all" not in [r.id for r in finance_gatekeeper.index.rules_in_order()]

    def test_invalid_candidate_rejected(self, gatekeeper, make_rule, make_policy, make_context) -> None:
        """Candidates are validated like a real save."""
        with pytest.raises(InvalidConditionError):
            gatekeeper.test_policy(make_policy("c", make_rule("r", condition="(")), make_context())


class TestOverride:
    """Tests for record_override()."""

    def test_override_recorded(self, finance_gatekeeper, transfer_context) -> None:
        """Overrides are their own audit entry with the reason attached."""
        result = finance_gatekeeper.evaluate(transfer_context)

        entry = finance_gatekeeper.record_override(
            transfer_context, result, user_id="supervisor", reason="approved by CFO"
        )

        assert entry.action == AuditAction.OVERRIDDEN
        assert entry.user_id == "supervisor"
        assert entry.result["override_reason"] == "approved by CFO"
        assert entry.result["allowed"] is False

        stats = finance_gatekeeper.trail.statistics()
        assert stats.total_denied == 1
        assert stats.total_overridden == 1
        assert stats.total_tasks_evaluated == 2


# =============================================================================
# Observation
# =============================================================================


class TestObservation:
    """Tests for snapshot(), health(), policy_logs() and subscribe()."""

    def test_snapshot_shape(self, finance_gatekeeper, transfer_context) -> None:
        """snapshot() returns the initial state for live consumers."""
        finance_gatekeeper.evaluate(transfer_context)

        snapshot = finance_gatekeeper.snapshot(10)

        assert set(snapshot) == {"recentLogs", "health", "stats", "timestamp"}
        assert len(snapshot["recentLogs"]) == 1
        assert snapshot["stats"]["total_tasks_evaluated"] == 1
        assert snapshot["health"]["active_rules"] == 2

    def test_health_healthy(self, finance_gatekeeper) -> None:
        """Warnings alone do not degrade health."""
        health = finance_gatekeeper.health()
        assert health["status"] == "healthy"
        assert health["policies"] == 1
        assert health["critical_conflicts"] == 0

    def test_health_degraded_on_critical_conflict(self, gatekeeper, make_rule, make_policy) -> None:
        """Opposing rules on the same condition degrade health."""
        gatekeeper.manager.add(make_policy(
            "p1",
            make_rule("allow", effect="allow", condition='task.action == "read"'),
            make_rule("deny", effect="deny", condition='task.action == "read"'),
        ))
        health = gatekeeper.health()
        assert health["status"] == "degraded"
        assert health["critical_conflicts"] == 1

    def test_policy_logs(self, gatekeeper, make_rule, make_policy, make_context) -> None:
        """Only entries where one of the policy's rules triggered are returned."""
        gatekeeper.manager.add(make_policy("p1", make_rule("big", condition="payload.n > 5")))
        gatekeeper.manager.add(make_policy("p2", make_rule("small", effect="allow", condition="payload.n < 5")))

        gatekeeper.evaluate(make_context(payload={"n": 10}))
        gatekeeper.evaluate(make_context(payload={"n": 1}))
        gatekeeper.evaluate(make_context(payload={"n": 20}))

        logs = gatekeeper.policy_logs("p1")
        assert len(logs) == 2
        assert all(entry.triggered_rules == ["big"] for entry in logs)
        assert len(gatekeeper.policy_logs("p1", n=1)) == 1

    def test_violations_in_memory(self, gatekeeper, make_rule, make_policy, make_context) -> None:
        """Denied entries are paged newest first with a total."""
        gatekeeper.manager.add(make_policy("p1", make_rule("big", condition="payload.n > 5")))
        for n, agent in [(10, "a1"), (1, "a1"), (20, "a2"), (30, "a1")]:
            gatekeeper.evaluate(make_context(agent, payload={"n": n}))

        items, total = gatekeeper.violations()
        assert total == 3
        assert [e.payload["n"] for e in items] == [30, 20, 10]

        items, total = gatekeeper.violations(agent_id="a1", limit=1, offset=1)
        assert total == 2
        assert [e.payload["n"] for e in items] == [10]

    def test_violations_from_database(self, temp_dir: Path, make_rule, make_policy, make_context) -> None:
        """With a database attached the whole stored history is searched."""
        path = temp_dir / "audit.db"
        with Gatekeeper(audit_db=path) as first:
            first.manager.add(make_policy("p1", make_rule("big", condition="payload.n > 5")))
            first.evaluate(make_context(payload={"n": 10}))

        with Gatekeeper(audit_db=path) as second:
            second.manager.add(make_policy("p1", make_rule("big", condition="payload.n > 5")))
            second.evaluate(make_context(payload={"n": 1}))
            items, total = second.violations()

        assert total == 1
        assert items[0].violated_rules == ["big"]

    def test_subscriber_receives_decisions(self, finance_gatekeeper, transfer_context) -> None:
        """Subscribers get a log event per decision."""
        events = []
        received = threading.Event()

        def on_event(event):
            events.append(event)
            received.set()

        finance_gatekeeper.subscribe(on_event)
        finance_gatekeeper.evaluate(transfer_context)

        assert received.wait(2.0)
        assert events[0]["type"] == "log"
        assert events[0]["data"]["action"] == "denied"


# =============================================================================
# Loading
# =============================================================================


class TestLoad:
    """Tests for load()."""

    def test_load_file(self, gatekeeper, temp_dir: Path, sample_policy_yaml) -> None:
        """A single YAML file is loaded."""
        path = temp_dir / "finance.yaml"
        path.write_text(sample_policy_yaml)

        policies = gatekeeper.load(path)

        assert [p.id for p in policies] == ["finance-controls"]
        assert len(gatekeeper.index) == 2

    def test_reload_file_updates(self, gatekeeper, temp_dir: Path, sample_policy_yaml) -> None:
        """Loading a file twice bumps the policy version."""
        path = temp_dir / "finance.yaml"
        path.write_text(sample_policy_yaml)

        gatekeeper.load(path)
        gatekeeper.load(path)

        assert gatekeeper.manager.get("finance-controls").version == "2"

    def test_load_directory(self, gatekeeper, temp_dir: Path, sample_policy_yaml) -> None:
        """A directory is loaded file by file."""
        (temp_dir / "finance.yaml").write_text(sample_policy_yaml)
        (temp_dir / "ops.yml").write_text(
            "id: ops\nname: Ops\nrules:\n"
            "  - id: deny-delete\n    name: No deletes\n    effect: deny\n"
            "    condition: task.action == \"delete\"\n"
        )

        policies = gatekeeper.load(temp_dir)

        assert {p.id for p in policies} == {"finance-controls", "ops"}
        assert len(gatekeeper.index) == 3


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    """Tests for evaluation while policies change."""

    def test_evaluate_during_edits(self, gatekeeper, make_rule, make_policy, make_context) -> None:
        """Readers always see one consistent rule set."""
        deny = make_policy("p1", make_rule("block", condition="true"))
        allow = make_policy("p1", make_rule("block", effect="allow", condition="true"))
        gatekeeper.manager.add(deny)

        errors: list[str] = []
        stop = threading.Event()

        def reader() -> None:
            context = make_context()
            while not stop.is_set():
                result = gatekeeper.evaluate(context)
                if len(result.triggered_rules) != 1 or result.rule_errors:
                    errors.append(result.reason)

        def writer() -> None:
            for i in range(50):
                gatekeeper.manager.update(allow if i % 2 else deny)
            stop.set()

        threads = [threading.Thread(target=reader) for _ in range(4)]
        threads.append(threading.Thread(target=writer))
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert errors == []
        stats = gatekeeper.trail.statistics()
        assert stats.total_tasks_evaluated == stats.total_allowed + stats.total_denied

    def test_toggle_is_all_or_nothing(self, gatekeeper, make_rule, make_policy, make_context) -> None:
        """A disable or enable is never observed half-applied."""
        gatekeeper.manager.add(make_policy(
            "multi",
            make_rule("r1", effect="allow", priority=30),
            make_rule("r2", effect="deny", priority=20),
            make_rule("r3", effect="allow", priority=10),
        ))
        full = {"r1", "r2", "r3"}

        partial: list[set[str]] = []
        stop = threading.Event()

        def reader() -> None:
            context = make_context()
            while not stop.is_set():
                seen = {rule.id for rule in gatekeeper.evaluate(context).triggered_rules}
                if seen not in (set(), full):
                    partial.append(seen)

        def toggler() -> None:
            for _ in range(100):
                gatekeeper.manager.disable("multi")
                gatekeeper.manager.enable("multi")
            stop.set()

        threads = [threading.Thread(target=reader) for _ in range(4)]
        threads.append(threading.Thread(target=toggler))
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert partial == []
        assert gatekeeper.manager.get("multi").enabled is True
