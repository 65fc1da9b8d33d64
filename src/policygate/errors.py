"""
Exception hierarchy for PolicyGate.

All PolicyGate exceptions inherit from PolicyGateError, allowing callers to
catch every PolicyGate-specific exception with a single except clause.

Exception Categories:
    - ConditionParseError: Condition string is not valid expression syntax
    - ConditionEvaluationError: Unknown variable or type mismatch at runtime
    - PolicyValidationError: Malformed policy or rule on create/update
    - CapacityError: Audit storage exhausted and eviction cannot proceed
    - StorageError: SQLite audit sink operation failed

Propagation:
    - Parse and validation errors are returned to the caller synchronously
    - Condition errors never escape a decision; they degrade a single rule
    - CapacityError fails an audit append, never the evaluation behind it
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Condition errors: 1xxx
ERROR_CONDITION_PARSE = 1001
ERROR_CONDITION_TOO_DEEP = 1002
ERROR_CONDITION_TOO_LONG = 1003
ERROR_CONDITION_EVALUATION = 1100
ERROR_CONDITION_UNKNOWN_VARIABLE = 1101
ERROR_CONDITION_TYPE_MISMATCH = 1102

# Validation errors: 2xxx
ERROR_VALIDATION = 2001
ERROR_VALIDATION_DUPLICATE_RULE = 2002
ERROR_VALIDATION_INVALID_CONDITION = 2003
ERROR_VALIDATION_POLICY_NOT_FOUND = 2004
ERROR_VALIDATION_VERSION_NOT_FOUND = 2005

# Audit errors: 3xxx
ERROR_AUDIT_CAPACITY = 3001

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class PolicyGateError(Exception):
    """
    Base exception for all PolicyGate errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Condition Errors
# =============================================================================


@dataclass
class ConditionError(PolicyGateError):
    """
    Base class for problems with a rule's condition string.

    Attributes:
        condition: The condition text that failed
        rule_id: The rule carrying the condition, when known
    """

    condition: str = ""
    rule_id: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "condition": self.condition,
            "rule_id": self.rule_id,
        })


@dataclass
class ConditionParseError(ConditionError):
    """Raised when a condition string is not valid expression syntax."""

    position: int | None = None
    detail: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            where = f" at position {self.position}" if self.position is not None else ""
            self.message = f"Malformed condition{where}: {self.detail}"
        if self.code == 0:
            self.code = ERROR_CONDITION_PARSE
        if not self.suggestion:
            self.suggestion = (
                "Conditions support && || ! == != < <= > >= and 'in [..]' "
                "over literals and dotted variable paths"
            )
        super().__post_init__()
        self.context.update({
            "position": self.position,
            "detail": self.detail,
        })


@dataclass
class ConditionEvaluationError(ConditionError):
    """Raised when a well-formed condition fails against a namespace."""

    detail: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Condition evaluation failed: {self.detail}"
        if self.code == 0:
            self.code = ERROR_CONDITION_EVALUATION
        super().__post_init__()
        self.context["detail"] = self.detail


@dataclass
class UnknownVariableError(ConditionEvaluationError):
    """Raised when a condition references a variable absent from the namespace."""

    variable: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.detail:
            self.detail = f"unknown variable '{self.variable}'"
        if self.code == 0:
            self.code = ERROR_CONDITION_UNKNOWN_VARIABLE
        super().__post_init__()
        self.context["variable"] = self.variable


@dataclass
class TypeMismatchError(ConditionEvaluationError):
    """Raised when a comparison mixes incompatible value types."""

    operator: str = ""
    left_type: str = ""
    right_type: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.detail:
            self.detail = (
                f"cannot apply '{self.operator}' to {self.left_type} and {self.right_type}"
            )
        if self.code == 0:
            self.code = ERROR_CONDITION_TYPE_MISMATCH
        super().__post_init__()
        self.context.update({
            "operator": self.operator,
            "left_type": self.left_type,
            "right_type": self.right_type,
        })


# =============================================================================
# Validation Errors
# =============================================================================


@dataclass
class PolicyValidationError(PolicyGateError):
    """
    Raised when a policy or rule is rejected on create/update.

    The active rule set is left unchanged whenever this is raised.

    Attributes:
        policy_id: The policy being validated
        rule_id: The offending rule, when the problem is rule-specific
    """

    policy_id: str | None = None
    rule_id: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_VALIDATION
        self.context.update({
            "policy_id": self.policy_id,
            "rule_id": self.rule_id,
        })


@dataclass
class DuplicateRuleError(PolicyValidationError):
    """Raised when a rule identifier is already used in the active rule set."""

    owner_policy_id: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            owner = f" (already defined by policy {self.owner_policy_id})" if self.owner_policy_id else ""
            self.message = f"Duplicate rule id: {self.rule_id}{owner}"
        if self.code == 0:
            self.code = ERROR_VALIDATION_DUPLICATE_RULE
        if not self.suggestion:
            self.suggestion = "Rule ids must be unique across all enabled policies"
        super().__post_init__()
        self.context["owner_policy_id"] = self.owner_policy_id


@dataclass
class InvalidConditionError(PolicyValidationError):
    """Raised when a rule's condition fails to parse at save time."""

    parse_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Rule {self.rule_id} has an invalid condition: {self.parse_error}"
        if self.code == 0:
            self.code = ERROR_VALIDATION_INVALID_CONDITION
        super().__post_init__()
        self.context["parse_error"] = self.parse_error


@dataclass
class PolicyNotFoundError(PolicyValidationError):
    """Raised when an operation names a policy that is not registered."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy not found: {self.policy_id}"
        if self.code == 0:
            self.code = ERROR_VALIDATION_POLICY_NOT_FOUND
        super().__post_init__()


@dataclass
class VersionNotFoundError(PolicyValidationError):
    """Raised when a rollback names a version absent from a policy's history."""

    version: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Version {self.version} not found for policy {self.policy_id}"
        if self.code == 0:
            self.code = ERROR_VALIDATION_VERSION_NOT_FOUND
        super().__post_init__()
        self.context["version"] = self.version


# =============================================================================
# Audit Errors
# =============================================================================


@dataclass
class CapacityError(PolicyGateError):
    """
    Raised when the audit trail cannot store an entry.

    This is the only failure an append may report, and it never fails the
    evaluation whose entry was being recorded.
    """

    entry_id: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Audit storage exhausted: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_AUDIT_CAPACITY
        if not self.suggestion:
            self.suggestion = "Check the audit database path and free disk space"
        self.context.update({
            "entry_id": self.entry_id,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(PolicyGateError):
    """
    Base class for audit database errors.

    Attributes:
        operation: The operation that failed (e.g., "insert", "query")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when database connection fails."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error
