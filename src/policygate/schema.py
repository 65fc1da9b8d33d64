"""
Schema definitions for PolicyGate.

This module defines all the Pydantic models used throughout PolicyGate:
- Rule/Policy/PolicyVersion: What is allowed and what is denied
- EvaluationContext/EvaluationResult: One decision request and its answer
- ConflictInfo: Static diagnostics about competing rules
- AuditLogEntry/SystemStatistics: The decision history and its summary

Design Decisions:
    - Models are immutable (frozen=True); a context is consumed once
    - Unknown fields are rejected (extra="forbid")
    - Payload values are JSON values only: str, number, bool, null,
      lists and nested mappings. Nothing in a payload is executable.
    - Timestamps on the wire are epoch milliseconds
"""

import math
import time
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, JsonValue, field_validator


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Enums
# =============================================================================


class RuleScope(str, Enum):
    """
    Breadth at which a rule applies.

    Narrower scopes are evaluated first: task, then agent, then global.
    """

    GLOBAL = "global"
    AGENT = "agent"
    TASK = "task"

    @property
    def specificity(self) -> int:
        """Sort weight; higher is more specific."""
        return _SCOPE_SPECIFICITY[self]


_SCOPE_SPECIFICITY = {
    RuleScope.GLOBAL: 0,
    RuleScope.AGENT: 1,
    RuleScope.TASK: 2,
}


class RuleEffect(str, Enum):
    """Effect a rule declares when its condition holds."""

    ALLOW = "allow"
    DENY = "deny"


class RuleAction(str, Enum):
    """Side-effect tags a triggered rule asks the caller to apply."""

    LOG = "log"
    NOTIFY = "notify"
    OVERRIDE = "override"


class AuditAction(str, Enum):
    """What happened to a task, as recorded in the audit trail."""

    ALLOWED = "allowed"
    DENIED = "denied"
    OVERRIDDEN = "overridden"


class ConflictType(str, Enum):
    """Kind of static relationship between two rules."""

    OPPOSING_EFFECTS = "opposing-effects"
    OVERLAPPING_CONDITIONS = "overlapping-conditions"
    PRIORITY_INVERSION = "priority-inversion"


class ConflictSeverity(str, Enum):
    """How urgently an operator should look at a conflict."""

    WARNING = "warning"
    CRITICAL = "critical"


# =============================================================================
# Policy Models
# =============================================================================


class Rule(BaseModel):
    """
    Atomic policy unit.

    Attributes:
        id: Identifier, unique across the active rule set
        name: Human-readable name cited in decision reasons
        scope: global, agent or task
        priority: Integer, higher evaluated first within a scope
        effect: allow or deny
        condition: Boolean expression over the evaluation namespace
        actions: Ordered set of side-effect tags (log, notify, override)
        target: Agent id (agent scope) or task name (task scope) the rule
            is restricted to; None applies the rule to every context
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Rule identifier")
    name: str = Field(..., min_length=1, description="Human-readable rule name")
    scope: RuleScope = Field(default=RuleScope.GLOBAL, description="Rule scope")
    priority: int = Field(default=0, description="Higher is evaluated first")
    effect: RuleEffect = Field(..., description="allow or deny")
    condition: str = Field(..., description="Boolean condition expression")
    actions: list[RuleAction] = Field(
        default_factory=list,
        description="Side-effect tags applied when the rule triggers",
    )
    target: str | None = Field(
        default=None,
        description="Agent id or task name this rule is restricted to",
    )
    tags: list[str] = Field(default_factory=list, description="Free-form labels")
    version: str | None = Field(default=None, description="Rule version label")
    created_at: datetime | None = Field(default=None, description="Creation time")
    updated_at: datetime | None = Field(default=None, description="Last edit time")

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> Any:
        """Priority must be a finite integer; bools and fractions are rejected."""
        if isinstance(v, bool):
            msg = "priority must be an integer, not a boolean"
            raise ValueError(msg)
        if isinstance(v, float):
            if not math.isfinite(v):
                msg = "priority must be finite"
                raise ValueError(msg)
            if not v.is_integer():
                msg = f"priority must be an integer, got {v}"
                raise ValueError(msg)
            return int(v)
        return v

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v: str) -> str:
        """Conditions must contain something besides whitespace."""
        if not v.strip():
            msg = "condition must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("actions")
    @classmethod
    def dedupe_actions(cls, v: list[RuleAction]) -> list[RuleAction]:
        """Keep the first occurrence of each action."""
        return list(dict.fromkeys(v))


class Policy(BaseModel):
    """
    Named, versioned container of rules, toggled as a unit.

    Attributes:
        id: Policy identifier
        name: Human-readable name
        description: Optional description
        rules: Ordered rules; list order is the insertion order tie-break
        version: Version label, bumped on every managed edit
        enabled: Disabled policies contribute no rules to evaluation
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Policy identifier")
    name: str = Field(..., min_length=1, description="Policy name")
    description: str | None = Field(default=None, description="Policy description")
    rules: list[Rule] = Field(default_factory=list, description="Policy rules")
    version: str = Field(default="1", description="Version label")
    enabled: bool = Field(default=True, description="Whether rules are live")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the policy was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the policy was last edited",
    )


class PolicyVersion(BaseModel):
    """Snapshot of a policy retained for audit and rollback."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., description="Version record identifier")
    policy_id: str = Field(..., description="Owning policy")
    version: str = Field(..., description="Version label at snapshot time")
    name: str = Field(..., description="Policy name at snapshot time")
    rules: list[Rule] = Field(default_factory=list, description="Rules at snapshot time")
    enabled: bool = Field(default=True, description="Enabled flag at snapshot time")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the snapshot was taken",
    )
    created_by: str | None = Field(default=None, description="Who made the change")
    description: str | None = Field(default=None, description="Change note")


# =============================================================================
# Evaluation Models
# =============================================================================


class ContextMetadata(BaseModel):
    """Optional request metadata; timeout is a hint for callers only."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    priority: int | None = None
    timeout: int | None = Field(default=None, ge=0)
    retry_count: int | None = Field(default=None, ge=0)
    user_id: str | None = None
    role: str | None = None


class EvaluationContext(BaseModel):
    """
    One-shot request driving a single evaluation.

    Attributes:
        agent_id: Agent proposing the task (not validated for existence)
        task_id: Task identifier
        task_name: Task name, matched against task-scoped rule targets
        agent: Agent attributes exposed as agent.<attr>
        task: Task attributes exposed as task.<attr>
        payload: Task data exposed as payload.<path>
        metadata: Optional request metadata
        timestamp: Epoch milliseconds
        simulation_mode: Echoed on the result; effects are not applied
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_id: str = Field(..., description="Agent identifier")
    task_id: str = Field(default="", description="Task identifier")
    task_name: str = Field(default="", description="Task name")
    agent: dict[str, JsonValue] = Field(default_factory=dict, description="Agent attributes")
    task: dict[str, JsonValue] = Field(default_factory=dict, description="Task attributes")
    payload: dict[str, JsonValue] = Field(default_factory=dict, description="Task payload")
    metadata: ContextMetadata | None = Field(default=None, description="Request metadata")
    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds")
    simulation_mode: bool = Field(default=False, description="Dry-run flag")


class RuleError(BaseModel):
    """Diagnostic note for a rule whose condition could not be evaluated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str
    error_type: str
    message: str


class EvaluationResult(BaseModel):
    """
    Outcome of one evaluation; produced exactly once.

    Attributes:
        allowed: Final decision
        reason: Human-readable explanation citing the deciding rule
        triggered_rules: Rules whose conditions held, in evaluation order
        applied_actions: Union of triggered rules' actions, first-seen order
        simulation_mode: Echo of the request flag
        timestamp: Epoch milliseconds when the decision was made
        conflict_detected: Both allow and deny rules triggered
        deciding_rule_id: The rule that decided, if any
        rule_errors: Rules skipped because their condition failed
        duration_ms: Measured wall-clock evaluation time
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: bool
    reason: str
    triggered_rules: list[Rule] = Field(default_factory=list)
    applied_actions: list[RuleAction] = Field(default_factory=list)
    simulation_mode: bool = False
    timestamp: int = Field(default_factory=now_ms)
    conflict_detected: bool = False
    deciding_rule_id: str | None = None
    rule_errors: list[RuleError] = Field(default_factory=list)
    duration_ms: float = 0.0


class ConflictInfo(BaseModel):
    """A pair of rules flagged for operator review."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule1: Rule
    rule2: Rule
    type: ConflictType
    severity: ConflictSeverity
    message: str


# =============================================================================
# Audit Models
# =============================================================================


class AuditLogEntry(BaseModel):
    """Immutable record of one decision (or one manual override)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    timestamp: int = Field(default_factory=now_ms)
    agent_id: str
    task_id: str = ""
    task_name: str = ""
    action: AuditAction
    triggered_rules: list[str] = Field(default_factory=list)
    violated_rules: list[str] = Field(default_factory=list, description="Triggered deny rules")
    applied_actions: list[str] = Field(default_factory=list)
    payload: dict[str, JsonValue] | None = None
    result: dict[str, JsonValue] | None = None
    error: str | None = None
    duration: float = Field(default=0.0, ge=0, description="Milliseconds")
    user_id: str | None = None
    simulation_mode: bool = False


class SystemStatistics(BaseModel):
    """All-time totals; eviction never decrements them."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    total_tasks_evaluated: int = 0
    total_allowed: int = 0
    total_denied: int = 0
    total_errors: int = 0
    total_overridden: int = 0
    violations_by_rule: dict[str, int] = Field(default_factory=dict)
    violations_by_agent: dict[str, int] = Field(default_factory=dict)
    avg_evaluation_time: float = 0.0


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def _policies_from_data(data: Any) -> list[Policy]:
    """Accept a single policy mapping, a list of them, or {policies: [...]}."""
    if data is None:
        return []
    if isinstance(data, dict) and "policies" in data and "rules" not in data:
        data = data["policies"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        msg = f"Expected a policy mapping or list of policies, got {type(data).__name__}"
        raise ValueError(msg)
    return [Policy.model_validate(item) for item in data]


def load_policies(path: Path | str) -> list[Policy]:
    """
    Load policies from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated Policy objects, in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return _policies_from_data(data)


def load_policies_from_string(content: str) -> list[Policy]:
    """Load policies from a YAML string."""
    return _policies_from_data(yaml.safe_load(content))


def load_context(path: Path | str) -> EvaluationContext:
    """
    Load an evaluation context from a YAML (or JSON) file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the content doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return EvaluationContext.model_validate(data)


def load_context_from_string(content: str) -> EvaluationContext:
    """Load an evaluation context from a YAML string."""
    return EvaluationContext.model_validate(yaml.safe_load(content))
