"""
Gatekeeper for PolicyGate.

The Gatekeeper is the orchestration layer that agent runtimes call. It
coordinates between:
- PolicyManager: validated, versioned policies (the write side)
- RuleIndex: the ordered, live rule snapshot
- DecisionEngine: allow/deny decisions
- AuditTrail: decision history, statistics and live notifications

Evaluation Flow:
    1. Decide the request against the current rule snapshot
    2. Record an audit entry for the decision
    3. Return the decision (even if recording failed)

Design Principles:
    - Enforcement first: an audit failure degrades observability, never
      the decision returned to the caller
    - Full audit: every evaluate() call produces one audit entry
    - Reproducible: same context + same rules = same decision
"""

from collections.abc import Callable
from pathlib import Path
from typing import Any

from policygate.audit import AuditTrail, entry_from_result
from policygate.audit.trail import Event
from policygate.config import Settings
from policygate.errors import CapacityError
from policygate.logging import get_logger
from policygate.policy import DecisionEngine, PolicyManager, RuleIndex
from policygate.report.json import build_snapshot_dict
from policygate.schema import (
    AuditAction,
    AuditLogEntry,
    ConflictInfo,
    ConflictSeverity,
    EvaluationContext,
    EvaluationResult,
    Policy,
    load_policies,
)
from policygate.store import AuditDB

logger = get_logger(__name__)


class Gatekeeper:
    """
    Policy decision point for agent tasks.

    Usage:
        gatekeeper = Gatekeeper()
        gatekeeper.manager.add(policy)
        result = gatekeeper.evaluate(context)
        if not result.allowed:
            print(result.reason)

    Attributes:
        settings: Engine configuration
        index: Live rule index
        manager: Policy management API
        engine: Decision engine reading the index
        trail: Audit trail receiving every decision
    """

    def __init__(
        self,
        settings: Settings | None = None,
        audit_db: AuditDB | str | Path | None = None,
    ) -> None:
        """
        Initialize the gatekeeper.

        Args:
            settings: Engine configuration (defaults apply when omitted)
            audit_db: Database or path mirroring the audit trail; falls
                      back to settings.audit_db_path
        """
        self.settings = settings or Settings()

        self._owns_db = False
        if audit_db is None and self.settings.audit_db_path is not None:
            audit_db = self.settings.audit_db_path
        if isinstance(audit_db, (str, Path)):
            audit_db = AuditDB(audit_db)
            self._owns_db = True
        self.db: AuditDB | None = audit_db

        self.index = RuleIndex()
        self.manager = PolicyManager(
            self.index,
            max_depth=self.settings.max_condition_depth,
            max_length=self.settings.max_condition_length,
        )
        self.engine = DecisionEngine(
            self.index,
            max_depth=self.settings.max_condition_depth,
            max_length=self.settings.max_condition_length,
        )
        self.trail = AuditTrail(
            capacity=self.settings.audit_capacity,
            queue_size=self.settings.notification_queue_size,
            sink=self.db,
        )
        self.audit_failures = 0

    def close(self) -> None:
        """Stop notification delivery and close an owned database."""
        self.trail.close()
        if self._owns_db and self.db is not None:
            self.db.close()

    def __enter__(self) -> "Gatekeeper":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Policies
    # =========================================================================

    def load(self, path: str | Path) -> list[Policy]:
        """Load policies from a YAML file or a directory of YAML files."""
        path = Path(path)
        if path.is_dir():
            return self.manager.load_directory(path)
        loaded = []
        for policy in load_policies(path):
            if policy.id in self.manager:
                loaded.append(self.manager.update(policy, description=f"Reloaded from {path.name}"))
            else:
                loaded.append(self.manager.add(policy, description=f"Loaded from {path.name}"))
        return loaded

    def conflicts(self) -> list[ConflictInfo]:
        """Diagnostics from the latest conflict scan."""
        return self.manager.conflicts()

    # =========================================================================
    # Decisions
    # =========================================================================

    def evaluate(self, context: EvaluationContext) -> EvaluationResult:
        """
        Decide a request and record it in the audit trail.

        Never raises for rule or audit problems; see EvaluationResult.rule_errors
        and the audit_failures counter.
        """
        result = self.engine.evaluate(context)
        self._record(entry_from_result(context, result))
        return result

    def test_policy(self, policy: Policy, context: EvaluationContext) -> EvaluationResult:
        """
        Dry-run a single policy against a request.

        The policy is validated like a real save, but it never reaches the
        live index and the decision is not audited. Disabled policies are
        evaluated as if enabled.

        Raises:
            PolicyValidationError: The policy would be rejected on save
        """
        scratch = PolicyManager(
            max_depth=self.settings.max_condition_depth,
            max_length=self.settings.max_condition_length,
        )
        scratch.add(policy.model_copy(update={"enabled": True}))
        engine = DecisionEngine(
            scratch.index,
            max_depth=self.settings.max_condition_depth,
            max_length=self.settings.max_condition_length,
        )
        return engine.evaluate(context.model_copy(update={"simulation_mode": True}))

    def record_override(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        user_id: str,
        reason: str,
    ) -> AuditLogEntry:
        """
        Record that an operator overrode a decision.

        Raises:
            CapacityError: The audit trail could not store the entry
        """
        entry = entry_from_result(context, result, action=AuditAction.OVERRIDDEN, user_id=user_id)
        entry = entry.model_copy(update={
            "result": {**(entry.result or {}), "override_reason": reason},
        })
        self.trail.append(entry)
        logger.info(
            "decision_overridden",
            entry_id=entry.id,
            agent_id=context.agent_id,
            user_id=user_id,
            was_allowed=result.allowed,
        )
        return entry

    def _record(self, entry: AuditLogEntry) -> None:
        try:
            self.trail.append(entry)
        except CapacityError as e:
            self.audit_failures += 1
            logger.error(
                "audit_append_failed",
                entry_id=entry.id,
                agent_id=entry.agent_id,
                error=e.message,
                code=e.code,
            )

    # =========================================================================
    # Observation
    # =========================================================================

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Receive {type: "log", data, timestamp} for every new audit entry."""
        return self.trail.subscribe(callback)

    def health(self) -> dict[str, Any]:
        """Summary of the engine's own condition."""
        conflicts = self.manager.conflicts()
        critical = sum(c.severity == ConflictSeverity.CRITICAL for c in conflicts)
        degraded = self.audit_failures > 0 or critical > 0
        return {
            "status": "degraded" if degraded else "healthy",
            "policies": len(self.manager.list_policies()),
            "active_rules": len(self.index),
            "conflicts": len(conflicts),
            "critical_conflicts": critical,
            "audit_entries": len(self.trail),
            "audit_failures": self.audit_failures,
            "dropped_notifications": self.trail.dropped_notifications,
        }

    def snapshot(self, n: int = 100) -> dict[str, Any]:
        """Initial state for a live consumer: {recentLogs, health, stats, timestamp}."""
        entries, stats = self.trail.snapshot(n)
        return build_snapshot_dict(entries, stats, self.health())

    def violations(
        self,
        agent_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLogEntry], int]:
        """
        Review denied decisions, newest first.

        Reads the audit database when one is attached, so the whole
        history is searchable; otherwise the in-memory trail.

        Returns:
            One page of denied entries and the total number that match
        """
        if self.db is not None:
            return self.db.violations(agent_id=agent_id, limit=limit, offset=offset)
        return self.trail.violations(agent_id=agent_id, limit=limit, offset=offset)

    def policy_logs(self, policy_id: str, n: int = 100) -> list[AuditLogEntry]:
        """Recent entries in which a rule of this policy triggered, newest first."""
        rule_ids = {rule.id for rule in self.manager.get(policy_id).rules}
        matched = []
        for entry in self.trail.recent(self.trail.capacity):
            if rule_ids.intersection(entry.triggered_rules):
                matched.append(entry)
                if len(matched) >= n:
                    break
        return matched
