"""
Policy Manager: the write side of the rule set.

Policies are the source of truth. Every accepted mutation:
    1. Validates the policy against the rest of the active set
    2. Stores it and appends a PolicyVersion snapshot to its history
    3. Re-indexes it (one atomic publish in the RuleIndex)
    4. Re-runs the ConflictDetector over the new rule order

A rejected mutation raises a PolicyValidationError and leaves the rule
set, the index and the history exactly as they were.
"""

import re
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path

from policygate.errors import (
    ConditionParseError,
    DuplicateRuleError,
    InvalidConditionError,
    PolicyNotFoundError,
    PolicyValidationError,
    VersionNotFoundError,
)
from policygate.logging import get_logger
from policygate.policy.conflicts import ConflictDetector
from policygate.policy.expression import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_LENGTH,
    compile_condition,
)
from policygate.policy.index import RuleIndex
from policygate.schema import ConflictInfo, Policy, PolicyVersion, load_policies

logger = get_logger(__name__)

_TRAILING_NUMBER = re.compile(r"^(.*?)(\d+)$")


def next_version(label: str) -> str:
    """
    Bump a version label.

    "3" -> "4", "1.2.9" -> "1.2.10", "beta" -> "beta.1"
    """
    match = _TRAILING_NUMBER.match(label)
    if match is None:
        return f"{label}.1"
    prefix, number = match.groups()
    return f"{prefix}{int(number) + 1}"


class PolicyManager:
    """
    Validated, versioned store of policies backing a RuleIndex.

    Usage:
        manager = PolicyManager(index)
        manager.add(policy)
        manager.disable(policy.id)
        manager.rollback(policy.id, "1")
        for conflict in manager.conflicts():
            ...
    """

    def __init__(
        self,
        index: RuleIndex | None = None,
        detector: ConflictDetector | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.index = index if index is not None else RuleIndex()
        self.detector = detector or ConflictDetector(max_depth, max_length)
        self.max_depth = max_depth
        self.max_length = max_length

        self._lock = threading.RLock()
        self._policies: dict[str, Policy] = {}
        self._history: dict[str, list[PolicyVersion]] = {}
        self._conflicts: list[ConflictInfo] = []

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, policy_id: str) -> Policy:
        """Return a policy or raise PolicyNotFoundError."""
        policy = self._policies.get(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id=policy_id)
        return policy

    def list_policies(self) -> list[Policy]:
        """All policies, enabled or not, in registration order."""
        return list(self._policies.values())

    def history(self, policy_id: str) -> list[PolicyVersion]:
        """Version snapshots of a policy, oldest first."""
        versions = self._history.get(policy_id)
        if versions is None:
            raise PolicyNotFoundError(policy_id=policy_id)
        return list(versions)

    def conflicts(self) -> list[ConflictInfo]:
        """Result of the most recent conflict scan."""
        return list(self._conflicts)

    def __contains__(self, policy_id: object) -> bool:
        return policy_id in self._policies

    # =========================================================================
    # Mutations
    # =========================================================================

    def add(
        self,
        policy: Policy,
        created_by: str | None = None,
        description: str | None = None,
    ) -> Policy:
        """Register a new policy."""
        with self._lock:
            if policy.id in self._policies:
                raise PolicyValidationError(
                    message=f"Policy already exists: {policy.id}",
                    policy_id=policy.id,
                    suggestion="Use update() to change an existing policy",
                )
            self._validate(policy)
            return self._commit(policy, created_by, description or "Created")

    def update(
        self,
        policy: Policy,
        created_by: str | None = None,
        description: str | None = None,
    ) -> Policy:
        """Replace an existing policy's content; the version label is bumped."""
        with self._lock:
            current = self.get(policy.id)
            self._validate(policy)
            updated = policy.model_copy(update={
                "version": next_version(current.version),
                "created_at": current.created_at,
                "updated_at": datetime.now(UTC),
            })
            return self._commit(updated, created_by, description or "Updated")

    def remove(self, policy_id: str) -> Policy:
        """Unregister a policy. Its history is kept."""
        with self._lock:
            policy = self.get(policy_id)
            del self._policies[policy_id]
            self.index.remove(policy_id)
            self._rescan()
            logger.info("policy_removed", policy_id=policy_id)
            return policy

    def enable(self, policy_id: str, created_by: str | None = None) -> Policy:
        """Make a policy's rules live again."""
        return self._set_enabled(policy_id, True, created_by)

    def disable(self, policy_id: str, created_by: str | None = None) -> Policy:
        """Withdraw every rule of a policy from evaluation in one publish."""
        return self._set_enabled(policy_id, False, created_by)

    def rollback(
        self,
        policy_id: str,
        version: str,
        created_by: str | None = None,
    ) -> Policy:
        """
        Restore the rules and name recorded in a past version.

        The rollback is itself a new version; history is never rewritten.

        Raises:
            PolicyNotFoundError: Unknown policy
            VersionNotFoundError: No such version in the policy's history
            PolicyValidationError: The old rules clash with the current set
        """
        with self._lock:
            current = self.get(policy_id)
            target = next(
                (v for v in self._history[policy_id] if v.version == version),
                None,
            )
            if target is None:
                raise VersionNotFoundError(policy_id=policy_id, version=version)

            restored = current.model_copy(update={
                "name": target.name,
                "rules": list(target.rules),
            })
            return self.update(
                restored,
                created_by=created_by,
                description=f"Rollback to version {version}",
            )

    def load_directory(self, path: Path | str, created_by: str | None = None) -> list[Policy]:
        """
        Add or update every policy found in *.yaml / *.yml files.

        Files are read in name order; a file may hold one policy, a list,
        or a mapping with a "policies" key.
        """
        directory = Path(path)
        if not directory.is_dir():
            raise PolicyValidationError(
                message=f"Policy directory not found: {directory}",
                suggestion="Pass a directory containing YAML policy files",
            )

        loaded = []
        files = sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")])
        for file in files:
            for policy in load_policies(file):
                if policy.id in self._policies:
                    loaded.append(self.update(policy, created_by, f"Reloaded from {file.name}"))
                else:
                    loaded.append(self.add(policy, created_by, f"Loaded from {file.name}"))

        logger.info("policies_loaded", directory=str(directory), files=len(files), policies=len(loaded))
        return loaded

    # =========================================================================
    # Internals
    # =========================================================================

    def _set_enabled(self, policy_id: str, enabled: bool, created_by: str | None) -> Policy:
        with self._lock:
            current = self.get(policy_id)
            if current.enabled == enabled:
                return current
            changed = current.model_copy(update={"enabled": enabled})
            if enabled:
                self._validate(changed)
            changed = changed.model_copy(update={
                "version": next_version(current.version),
                "updated_at": datetime.now(UTC),
            })
            return self._commit(changed, created_by, "Enabled" if enabled else "Disabled")

    def _validate(self, policy: Policy) -> None:
        """Reject duplicate rule ids and conditions that do not parse."""
        seen: set[str] = set()
        for rule in policy.rules:
            if rule.id in seen:
                raise DuplicateRuleError(
                    policy_id=policy.id,
                    rule_id=rule.id,
                    owner_policy_id=policy.id,
                )
            seen.add(rule.id)

        if policy.enabled:
            for other in self._policies.values():
                if other.id == policy.id or not other.enabled:
                    continue
                for rule in other.rules:
                    if rule.id in seen:
                        raise DuplicateRuleError(
                            policy_id=policy.id,
                            rule_id=rule.id,
                            owner_policy_id=other.id,
                        )

        for rule in policy.rules:
            try:
                compile_condition(rule.condition, self.max_depth, self.max_length)
            except ConditionParseError as e:
                raise InvalidConditionError(
                    policy_id=policy.id,
                    rule_id=rule.id,
                    parse_error=e.message,
                ) from e

    def _commit(self, policy: Policy, created_by: str | None, description: str) -> Policy:
        self._policies[policy.id] = policy
        self._history.setdefault(policy.id, []).append(
            PolicyVersion(
                id=uuid.uuid4().hex[:12],
                policy_id=policy.id,
                version=policy.version,
                name=policy.name,
                rules=list(policy.rules),
                enabled=policy.enabled,
                created_by=created_by,
                description=description,
            )
        )
        self.index.add(policy)
        self._rescan()
        logger.info(
            "policy_saved",
            policy_id=policy.id,
            version=policy.version,
            enabled=policy.enabled,
            rules=len(policy.rules),
            change=description,
        )
        return policy

    def _rescan(self) -> None:
        self._conflicts = self.detector.scan(self.index.rules_in_order())
