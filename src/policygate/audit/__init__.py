"""
Audit module for PolicyGate.

Every decision becomes an immutable AuditLogEntry in the AuditTrail,
which also keeps the running SystemStatistics and fans entries out to
subscribers.
"""

from policygate.audit.trail import (
    AuditSink,
    AuditTrail,
    build_log_event,
    entry_from_result,
)

__all__ = [
    "AuditSink",
    "AuditTrail",
    "build_log_event",
    "entry_from_result",
]
