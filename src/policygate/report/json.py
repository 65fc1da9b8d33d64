"""
JSON output for PolicyGate.

Shapes decisions, audit history, statistics and conflicts as plain
dictionaries for programmatic consumers: the CLI's --json mode and the
initial snapshot a live dashboard requests before subscribing.

Design Principles:
    - Consistent schema: the same keys for the same object everywhere
    - Epoch milliseconds for decision and audit times (as recorded)
    - ISO timestamps for policy and version metadata
"""

import json
from datetime import datetime
from typing import Any

from policygate.schema import (
    AuditLogEntry,
    ConflictInfo,
    EvaluationResult,
    PolicyVersion,
    SystemStatistics,
    now_ms,
)


def to_json(data: Any, indent: int = 2) -> str:
    """Serialize a report dictionary."""
    return json.dumps(data, indent=indent, default=_json_serializer)


def build_result_dict(result: EvaluationResult) -> dict[str, Any]:
    """Serialize one decision."""
    return {
        "allowed": result.allowed,
        "reason": result.reason,
        "triggered_rules": [
            {
                "id": rule.id,
                "name": rule.name,
                "scope": rule.scope.value,
                "priority": rule.priority,
                "effect": rule.effect.value,
            }
            for rule in result.triggered_rules
        ],
        "applied_actions": [action.value for action in result.applied_actions],
        "deciding_rule_id": result.deciding_rule_id,
        "conflict_detected": result.conflict_detected,
        "simulation_mode": result.simulation_mode,
        "rule_errors": [error.model_dump() for error in result.rule_errors],
        "timestamp": result.timestamp,
        "duration_ms": result.duration_ms,
    }


def build_conflict_dict(conflict: ConflictInfo) -> dict[str, Any]:
    """Serialize one conflict diagnostic."""
    return {
        "type": conflict.type.value,
        "severity": conflict.severity.value,
        "rule1": conflict.rule1.id,
        "rule2": conflict.rule2.id,
        "message": conflict.message,
    }


def build_version_dict(version: PolicyVersion) -> dict[str, Any]:
    """Serialize one policy version snapshot."""
    return {
        "id": version.id,
        "policy_id": version.policy_id,
        "version": version.version,
        "name": version.name,
        "enabled": version.enabled,
        "rules": [rule.id for rule in version.rules],
        "created_at": version.created_at.isoformat(),
        "created_by": version.created_by,
        "description": version.description,
    }


def build_snapshot_dict(
    entries: list[AuditLogEntry],
    stats: SystemStatistics,
    health: dict[str, Any],
) -> dict[str, Any]:
    """
    Build the initial state a live consumer requests on connect.

    Shape: {recentLogs, health, stats, timestamp}
    """
    return {
        "recentLogs": [entry.model_dump(mode="json") for entry in entries],
        "health": health,
        "stats": stats.model_dump(mode="json"),
        "timestamp": now_ms(),
    }


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for objects not serializable by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "value"):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
