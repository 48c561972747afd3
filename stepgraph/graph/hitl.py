"""
Gated actions - Human-in-the-loop approval of node results.

A node that wants approval before its result takes effect returns a Gate
wrapping the result it proposes. At the end of the superstep the executor
persists the run, emits one GatedAction descriptor per gate and halts with
status SUSPENDED. The caller resumes the run with one Decision per
descriptor, in the same order:

- approve: the proposal is applied exactly as proposed
- modify:  the proposal's state update is replaced with new params
- reject:  the proposal is discarded; the task completes with an empty
           update and its compiled edges
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from stepgraph.errors import ResumeError
from stepgraph.graph.directives import Gate, NodeResult, Route, Spawn, Update


class DecisionType(StrEnum):
    """Caller verdict on a gated action."""

    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"


@dataclass
class GatedAction:
    """Descriptor of a result waiting for approval."""

    action_id: str
    node_id: str
    params: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "action_id": self.action_id,
            "node_id": self.node_id,
            "params": self.params,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GatedAction":
        return cls(
            action_id=data["action_id"],
            node_id=data["node_id"],
            params=dict(data.get("params") or {}),
            description=data.get("description", ""),
        )


@dataclass
class Decision:
    """Caller's answer to one GatedAction."""

    type: DecisionType
    params: dict[str, Any] | None = None
    reason: str = ""

    @classmethod
    def approve(cls) -> "Decision":
        return cls(type=DecisionType.APPROVE)

    @classmethod
    def modify(cls, params: dict[str, Any]) -> "Decision":
        return cls(type=DecisionType.MODIFY, params=dict(params))

    @classmethod
    def reject(cls, reason: str = "") -> "Decision":
        return cls(type=DecisionType.REJECT, reason=reason)

    @classmethod
    def coerce(cls, value: Any) -> "Decision":
        """Accept a Decision, a decision type string, or a dict."""
        if isinstance(value, Decision):
            return value
        if isinstance(value, str):
            return cls(type=DecisionType(value))
        if isinstance(value, dict):
            return cls(
                type=DecisionType(value["type"]),
                params=value.get("params"),
                reason=value.get("reason", ""),
            )
        raise ResumeError(f"Cannot interpret {value!r} as a decision")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "params": self.params, "reason": self.reason}


def apply_decision(gate: Gate, decision: Decision) -> NodeResult:
    """Resolve a gate into the result that actually takes effect."""
    proposal = gate.proposal
    if decision.type == DecisionType.APPROVE:
        return proposal

    if decision.type == DecisionType.MODIFY:
        params = dict(decision.params or {})
        if isinstance(proposal, Route):
            return Route(goto=proposal.goto, update=params)
        if isinstance(proposal, Spawn):
            return Spawn(tasks=list(proposal.tasks), update=params)
        return Update(params)

    return Update({})
