"""
Storage module for PolicyGate.

SQLite persistence for the audit trail. The in-memory AuditTrail is the
live view; AuditDB is an optional, append-only mirror of it.
"""

from policygate.store.db import AuditDB

__all__ = [
    "AuditDB",
]
