"""
Audit Trail for PolicyGate.

Append-only, time-ordered history of decisions with running statistics.

Design Principles:
    - Two locks: an append lock orders writers across the sink write and
      the notification enqueue; the state lock covers only the deque and
      the statistics swap. Readers never wait on disk I/O and never see
      an entry without its statistics or the other way round.
    - Bounded: a deque with maxlen evicts the oldest entry in O(1).
      Statistics are all-time totals and never shrink on eviction.
    - Decoupled delivery: append() only enqueues a notification; a
      dispatcher thread delivers it in append order. A full queue drops
      the notification, it never blocks the append.
"""

import itertools
import queue
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from typing import Any

from policygate.errors import CapacityError, StorageError
from policygate.logging import get_logger
from policygate.schema import (
    AuditAction,
    AuditLogEntry,
    EvaluationContext,
    EvaluationResult,
    RuleEffect,
    SystemStatistics,
    now_ms,
)

logger = get_logger(__name__)

Event = dict[str, Any]
Subscriber = Callable[[Event], None]

_STOP = object()


def generate_entry_id() -> str:
    """Generate a unique ID for audit entries."""
    return uuid.uuid4().hex[:12]


def entry_from_result(
    context: EvaluationContext,
    result: EvaluationResult,
    action: AuditAction | None = None,
    user_id: str | None = None,
    error: str | None = None,
) -> AuditLogEntry:
    """
    Build the audit record for one evaluation.

    Args:
        context: The evaluated request
        result: The decision
        action: Override the recorded action (e.g. OVERRIDDEN)
        user_id: Acting user; defaults to the request's metadata.user_id
        error: Error text; defaults to a summary of per-rule errors
    """
    if action is None:
        action = AuditAction.ALLOWED if result.allowed else AuditAction.DENIED
    if user_id is None and context.metadata is not None:
        user_id = context.metadata.user_id
    if error is None and result.rule_errors:
        error = "; ".join(f"{e.rule_id}: {e.message}" for e in result.rule_errors)

    return AuditLogEntry(
        id=generate_entry_id(),
        timestamp=result.timestamp,
        agent_id=context.agent_id,
        task_id=context.task_id,
        task_name=context.task_name,
        action=action,
        triggered_rules=[rule.id for rule in result.triggered_rules],
        violated_rules=[
            rule.id for rule in result.triggered_rules if rule.effect == RuleEffect.DENY
        ],
        applied_actions=[a.value for a in result.applied_actions],
        payload=dict(context.payload),
        result={
            "allowed": result.allowed,
            "reason": result.reason,
            "deciding_rule_id": result.deciding_rule_id,
            "conflict_detected": result.conflict_detected,
        },
        error=error,
        duration=result.duration_ms,
        user_id=user_id,
        simulation_mode=result.simulation_mode,
    )


def build_log_event(entry: AuditLogEntry) -> Event:
    """Shape an entry the way the live-update transport expects it."""
    return {
        "type": "log",
        "data": entry.model_dump(mode="json"),
        "timestamp": now_ms(),
    }


class AuditSink(ABC):
    """Durable mirror of the trail."""

    @abstractmethod
    def record_entry(self, entry: AuditLogEntry) -> None:
        """
        Persist one entry.

        Raises:
            StorageError: The entry could not be written
        """
        ...


class AuditTrail:
    """
    In-memory audit log with statistics and push notifications.

    Usage:
        trail = AuditTrail(capacity=10_000)
        unsubscribe = trail.subscribe(lambda event: print(event["data"]["id"]))
        trail.append(entry)
        trail.recent(20)      # newest first
        trail.statistics()    # SystemStatistics snapshot
        trail.close()
    """

    def __init__(
        self,
        capacity: int = 10_000,
        queue_size: int = 1024,
        sink: AuditSink | None = None,
    ) -> None:
        if capacity <= 0:
            msg = "capacity must be positive"
            raise ValueError(msg)
        self.capacity = capacity
        self.sink = sink

        # Lock order: _append_lock, then _lock
        self._append_lock = threading.Lock()
        self._lock = threading.Lock()
        self._entries: deque[AuditLogEntry] = deque(maxlen=capacity)
        self._stats = SystemStatistics()

        self._subscribers: tuple[tuple[int, Subscriber], ...] = ()
        self._subscriber_ids = itertools.count(1)
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._dispatcher: threading.Thread | None = None
        self._stopping = threading.Event()
        self._closed = False
        self.dropped_notifications = 0

    # =========================================================================
    # Writes
    # =========================================================================

    def append(self, entry: AuditLogEntry) -> None:
        """
        Record an entry and update statistics in one step.

        Raises:
            CapacityError: The durable sink refused the entry. The
                in-memory trail and statistics are left unchanged.
        """
        with self._append_lock:
            if self.sink is not None:
                try:
                    self.sink.record_entry(entry)
                except StorageError as e:
                    raise CapacityError(entry_id=entry.id, underlying_error=e.message) from e

            with self._lock:
                try:
                    self._entries.append(entry)
                except MemoryError as e:
                    raise CapacityError(entry_id=entry.id, underlying_error="out of memory") from e
                self._stats = self._updated_statistics(self._stats, entry)
                deliver = bool(self._subscribers) and not self._closed

            # Still under _append_lock, so events are queued in log order.
            if deliver:
                self._notify(build_log_event(entry))

    @staticmethod
    def _updated_statistics(stats: SystemStatistics, entry: AuditLogEntry) -> SystemStatistics:
        total = stats.total_tasks_evaluated + 1
        by_rule = stats.violations_by_rule
        by_agent = stats.violations_by_agent

        if entry.action == AuditAction.DENIED:
            by_rule = dict(by_rule)
            for rule_id in entry.violated_rules:
                by_rule[rule_id] = by_rule.get(rule_id, 0) + 1
            by_agent = dict(by_agent)
            by_agent[entry.agent_id] = by_agent.get(entry.agent_id, 0) + 1

        return SystemStatistics(
            total_tasks_evaluated=total,
            total_allowed=stats.total_allowed + (entry.action == AuditAction.ALLOWED),
            total_denied=stats.total_denied + (entry.action == AuditAction.DENIED),
            total_overridden=stats.total_overridden + (entry.action == AuditAction.OVERRIDDEN),
            total_errors=stats.total_errors + (entry.error is not None),
            violations_by_rule=by_rule,
            violations_by_agent=by_agent,
            avg_evaluation_time=stats.avg_evaluation_time
            + (entry.duration - stats.avg_evaluation_time) / total,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def recent(self, n: int = 100) -> list[AuditLogEntry]:
        """The n newest entries, newest first."""
        if n <= 0:
            return []
        with self._lock:
            return list(itertools.islice(reversed(self._entries), n))

    def statistics(self) -> SystemStatistics:
        """Point-in-time statistics; the returned model is immutable."""
        return self._stats

    def snapshot(self, n: int = 100) -> tuple[list[AuditLogEntry], SystemStatistics]:
        """Recent entries and the statistics that include exactly them."""
        with self._lock:
            return list(itertools.islice(reversed(self._entries), max(n, 0))), self._stats

    def violations(
        self,
        agent_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLogEntry], int]:
        """Denied entries still in memory, newest first, paged; plus their total."""
        with self._lock:
            denied = [
                e for e in reversed(self._entries)
                if e.action == AuditAction.DENIED
                and (agent_id is None or e.agent_id == agent_id)
            ]
        offset = max(offset, 0)
        return denied[offset:offset + max(limit, 0)], len(denied)

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Subscribers
    # =========================================================================

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for every future append.

        Callbacks run on the dispatcher thread. Exceptions they raise are
        logged and do not affect other subscribers.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            if self._closed:
                msg = "audit trail is closed"
                raise RuntimeError(msg)
            token = next(self._subscriber_ids)
            self._subscribers = self._subscribers + ((token, callback),)
            if self._dispatcher is None:
                self._dispatcher = threading.Thread(
                    target=self._dispatch_loop,
                    name="policygate-audit-dispatch",
                    daemon=True,
                )
                self._dispatcher.start()

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers = tuple(s for s in self._subscribers if s[0] != token)

        return unsubscribe

    def _notify(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped_notifications += 1
            logger.warning(
                "audit_notification_dropped",
                entry_id=event["data"]["id"],
                dropped_total=self.dropped_notifications,
            )

    def _dispatch_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                event = self._queue.get(timeout=0.05)
            except queue.Empty:
                continue
            try:
                if event is _STOP:
                    return
                for _, callback in self._subscribers:
                    if self._stopping.is_set():
                        break
                    try:
                        callback(event)
                    except Exception:
                        logger.exception("audit_subscriber_failed")
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 1.0) -> bool:
        """Wait until queued notifications are delivered. True on success."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.005)
        return True

    def close(self, timeout: float = 1.0) -> None:
        """
        Stop the dispatcher, returning within roughly `timeout` seconds.

        Pending notifications are delivered first when the dispatcher keeps
        up; otherwise the rest are abandoned and a stuck subscriber is left
        to finish on its own daemon thread.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            dispatcher = self._dispatcher
        if dispatcher is None:
            return

        deadline = time.monotonic() + timeout
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            self._stopping.set()
        dispatcher.join(max(deadline - time.monotonic(), 0.0))
        if dispatcher.is_alive():
            self._stopping.set()
            logger.warning("audit_dispatcher_stuck", pending=self._queue.qsize())
