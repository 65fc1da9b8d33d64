"""
SQLite audit storage for PolicyGate.

Mirrors every AuditTrail entry into a single SQLite file so decisions
survive a restart and can be inspected offline (`policygate logs`,
`policygate stats`).

Design Principles:
    - Append-only: entries are inserted, never updated or deleted
    - Unbounded: the in-memory trail evicts, the database does not
    - Self-contained: one .db file holds the full decision history

Tables:
    - schema_version: Applied schema versions
    - audit_entries: One row per AuditLogEntry
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from policygate.audit.trail import AuditSink
from policygate.errors import StorageConnectionError, StorageReadError, StorageWriteError
from policygate.schema import AuditAction, AuditLogEntry, SystemStatistics

# Schema version for migrations
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Audit entries: one row per decision or override
CREATE TABLE IF NOT EXISTS audit_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL UNIQUE,
    timestamp INTEGER NOT NULL,
    agent_id TEXT NOT NULL,
    task_id TEXT NOT NULL DEFAULT '',
    task_name TEXT NOT NULL DEFAULT '',
    action TEXT NOT NULL,
    triggered_rules_json TEXT NOT NULL,
    violated_rules_json TEXT NOT NULL,
    applied_actions_json TEXT NOT NULL,
    payload_json TEXT,
    result_json TEXT,
    error TEXT,
    duration REAL NOT NULL DEFAULT 0,
    user_id TEXT,
    simulation_mode INTEGER NOT NULL DEFAULT 0
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_audit_entries_agent_id ON audit_entries(agent_id);
CREATE INDEX IF NOT EXISTS idx_audit_entries_timestamp ON audit_entries(timestamp);
"""


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


class AuditDB(AuditSink):
    """
    SQLite database for audit entries.

    Usage:
        db = AuditDB("audit.db")
        trail = AuditTrail(sink=db)
        ...
        db.recent_entries(20)
        db.close()

    Or use as context manager:
        with AuditDB("audit.db") as db:
            ...
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
                     Will be created if it doesn't exist.
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            cursor = self._conn.executescript(CREATE_TABLES_SQL)
            cursor.close()

            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            if cursor.fetchone() is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions."""
        with self._lock:
            try:
                yield
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "AuditDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Writes
    # =========================================================================

    def record_entry(self, entry: AuditLogEntry) -> None:
        """
        Append one audit entry.

        Raises:
            StorageWriteError: The insert failed (closed database, disk full,
                duplicate entry id, ...)
        """
        if self._conn is None:
            raise StorageWriteError(operation="record_entry", underlying_error="database is closed")
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO audit_entries (
                        entry_id, timestamp, agent_id, task_id, task_name, action,
                        triggered_rules_json, violated_rules_json, applied_actions_json,
                        payload_json, result_json, error, duration, user_id,
                        simulation_mode
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.timestamp,
                        entry.agent_id,
                        entry.task_id,
                        entry.task_name,
                        entry.action.value,
                        json.dumps(entry.triggered_rules),
                        json.dumps(entry.violated_rules),
                        json.dumps(entry.applied_actions),
                        _dumps(entry.payload),
                        _dumps(entry.result),
                        entry.error,
                        entry.duration,
                        entry.user_id,
                        int(entry.simulation_mode),
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_entry",
                underlying_error=str(e),
            ) from e

    # =========================================================================
    # Reads
    # =========================================================================

    def _row_to_entry(self, row: sqlite3.Row) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["entry_id"],
            timestamp=row["timestamp"],
            agent_id=row["agent_id"],
            task_id=row["task_id"],
            task_name=row["task_name"],
            action=AuditAction(row["action"]),
            triggered_rules=json.loads(row["triggered_rules_json"]),
            violated_rules=json.loads(row["violated_rules_json"]),
            applied_actions=json.loads(row["applied_actions_json"]),
            payload=json.loads(row["payload_json"]) if row["payload_json"] else None,
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            error=row["error"],
            duration=row["duration"],
            user_id=row["user_id"],
            simulation_mode=bool(row["simulation_mode"]),
        )

    def recent_entries(self, limit: int = 100, agent_id: str | None = None) -> list[AuditLogEntry]:
        """
        List the newest entries.

        Args:
            limit: Maximum number of entries to return
            agent_id: Only entries for this agent

        Returns:
            Entries, most recent first
        """
        query = "SELECT * FROM audit_entries"
        params: list[Any] = []
        if agent_id is not None:
            query += " WHERE agent_id = ?"
            params.append(agent_id)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)

        try:
            cursor = self._conn.execute(query, params)
            return [self._row_to_entry(row) for row in cursor]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="recent_entries",
                underlying_error=str(e),
            ) from e

    def violations(
        self,
        agent_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLogEntry], int]:
        """
        Page through denied entries, newest first.

        Returns:
            The requested page and the total number of matching entries
        """
        where = "WHERE action = 'denied'"
        params: list[Any] = []
        if agent_id is not None:
            where += " AND agent_id = ?"
            params.append(agent_id)

        try:
            total = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM audit_entries {where}", params
            ).fetchone()["n"]
            cursor = self._conn.execute(
                f"SELECT * FROM audit_entries {where} ORDER BY seq DESC LIMIT ? OFFSET ?",
                [*params, max(limit, 0), max(offset, 0)],
            )
            return [self._row_to_entry(row) for row in cursor], total
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="violations",
                underlying_error=str(e),
            ) from e

    def count_entries(self) -> int:
        """Total number of stored entries."""
        try:
            cursor = self._conn.execute("SELECT COUNT(*) AS n FROM audit_entries")
            return cursor.fetchone()["n"]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="count_entries",
                underlying_error=str(e),
            ) from e

    def statistics(self) -> SystemStatistics:
        """Recompute all-time statistics from the stored history."""
        try:
            cursor = self._conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(action = 'allowed'), 0) AS allowed,
                    COALESCE(SUM(action = 'denied'), 0) AS denied,
                    COALESCE(SUM(action = 'overridden'), 0) AS overridden,
                    COALESCE(SUM(error IS NOT NULL), 0) AS errors,
                    COALESCE(AVG(duration), 0.0) AS avg_duration
                FROM audit_entries
                """
            )
            totals = cursor.fetchone()

            by_rule: dict[str, int] = {}
            by_agent: dict[str, int] = {}
            cursor = self._conn.execute(
                "SELECT agent_id, violated_rules_json FROM audit_entries WHERE action = 'denied'"
            )
            for row in cursor:
                by_agent[row["agent_id"]] = by_agent.get(row["agent_id"], 0) + 1
                for rule_id in json.loads(row["violated_rules_json"]):
                    by_rule[rule_id] = by_rule.get(rule_id, 0) + 1
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="statistics",
                underlying_error=str(e),
            ) from e

        return SystemStatistics(
            total_tasks_evaluated=totals["total"],
            total_allowed=totals["allowed"],
            total_denied=totals["denied"],
            total_overridden=totals["overridden"],
            total_errors=totals["errors"],
            violations_by_rule=by_rule,
            violations_by_agent=by_agent,
            avg_evaluation_time=totals["avg_duration"],
        )
