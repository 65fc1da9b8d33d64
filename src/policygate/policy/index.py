"""
Rule Index: the live, ordered working set of rules.

The index is a projection of the enabled policies. Readers take an
immutable snapshot (a tuple) and keep using it even while a writer
publishes a replacement; a rebuild never exposes a half-built order.

Order:
    1. Scope specificity, descending (task > agent > global)
    2. Priority, descending
    3. Insertion order, ascending. A rule keeps the sequence number it was
       first indexed with, so editing a policy never reshuffles its
       equal-priority rules relative to other policies.
"""

import itertools
import threading
from dataclasses import dataclass

from policygate.schema import Policy, Rule


@dataclass(frozen=True)
class IndexedRule:
    """A rule plus the bookkeeping the index sorts by."""

    rule: Rule
    policy_id: str
    sequence: int

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (-self.rule.scope.specificity, -self.rule.priority, self.sequence)


class RuleIndex:
    """
    Ordered, snapshot-published set of rules from enabled policies.

    Usage:
        index = RuleIndex()
        index.add(policy)
        for rule in index.rules_in_order():
            ...
        index.remove(policy.id)

    Disabled policies are accepted by add() but contribute no rules.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._sequence = itertools.count()
        # (policy_id, rule_id) -> sequence, survives policy edits
        self._sequences: dict[tuple[str, str], int] = {}
        self._by_policy: dict[str, tuple[IndexedRule, ...]] = {}
        self._snapshot: tuple[IndexedRule, ...] = ()

    def add(self, policy: Policy) -> None:
        """Index (or re-index) a policy's rules and publish a new snapshot."""
        with self._write_lock:
            current = {rule.id for rule in policy.rules}
            self._sequences = {
                k: v for k, v in self._sequences.items()
                if k[0] != policy.id or k[1] in current
            }
            by_policy = dict(self._by_policy)
            by_policy[policy.id] = self._entries_for(policy)
            self._publish(by_policy)

    def remove(self, policy_id: str) -> None:
        """Drop every rule of a policy in one publish."""
        with self._write_lock:
            if policy_id not in self._by_policy:
                return
            by_policy = dict(self._by_policy)
            del by_policy[policy_id]
            self._sequences = {k: v for k, v in self._sequences.items() if k[0] != policy_id}
            self._publish(by_policy)

    def _entries_for(self, policy: Policy) -> tuple[IndexedRule, ...]:
        if not policy.enabled:
            return ()
        entries = []
        for rule in policy.rules:
            key = (policy.id, rule.id)
            if key not in self._sequences:
                self._sequences[key] = next(self._sequence)
            entries.append(IndexedRule(rule, policy.id, self._sequences[key]))
        return tuple(entries)

    def _publish(self, by_policy: dict[str, tuple[IndexedRule, ...]]) -> None:
        ordered = sorted(
            (entry for entries in by_policy.values() for entry in entries),
            key=lambda e: e.sort_key,
        )
        # Readers dereference _snapshot once: they see the old or the new tuple.
        self._by_policy = by_policy
        self._snapshot = tuple(ordered)

    def snapshot(self) -> tuple[IndexedRule, ...]:
        """The current ordered entries, immutable."""
        return self._snapshot

    def rules_in_order(self) -> tuple[Rule, ...]:
        """The current ordered rules, immutable and restartable."""
        return tuple(entry.rule for entry in self._snapshot)

    def __len__(self) -> int:
        return len(self._snapshot)
