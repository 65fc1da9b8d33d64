"""
Variable namespace for condition evaluation.

An EvaluationContext is flattened once per evaluation into a plain dict
keyed by dotted paths. Conditions can only read what is in this dict.

Keys:
    agent.id, agent.<attr>        (agent.role falls back to metadata.role)
    task.id, task.name, task.<attr>
    payload.<path>                (nested mappings flattened with dots)
    metadata.<field>
    context.timestamp, context.userRole, context.userId, context.simulationMode
"""

from collections.abc import Mapping
from typing import Any

from policygate.schema import EvaluationContext


def _flatten(prefix: str, value: Any, out: dict[str, Any]) -> None:
    """Add prefix -> value, then recurse into mappings. Lists stay whole."""
    out[prefix] = value
    if isinstance(value, Mapping):
        for key, child in value.items():
            _flatten(f"{prefix}.{key}", child, out)


def build_namespace(context: EvaluationContext) -> dict[str, Any]:
    """Flatten a context into the namespace conditions are evaluated against."""
    ns: dict[str, Any] = {}

    for key, value in context.agent.items():
        _flatten(f"agent.{key}", value, ns)
    ns["agent.id"] = context.agent_id

    for key, value in context.task.items():
        _flatten(f"task.{key}", value, ns)
    ns["task.id"] = context.task_id
    ns["task.name"] = context.task_name

    for key, value in context.payload.items():
        _flatten(f"payload.{key}", value, ns)

    metadata = context.metadata
    if metadata is not None:
        for key, value in metadata.model_dump(exclude_none=True).items():
            ns[f"metadata.{key}"] = value
        if metadata.role is not None:
            ns.setdefault("agent.role", metadata.role)
            ns["context.userRole"] = metadata.role
        if metadata.user_id is not None:
            ns["context.userId"] = metadata.user_id

    ns["context.timestamp"] = context.timestamp
    ns["context.simulationMode"] = context.simulation_mode
    return ns
