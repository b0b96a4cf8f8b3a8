"""Models module for Pydantic schemas and persistence.

This module exposes the plan, transport, ledger and API models.
"""

from models.schemas import (
    AgentState,
    Availability,
    BridgeKind,
    BridgeStatus,
    CancelResult,
    ContextItem,
    CostRecord,
    ExecuteResult,
    ExecutionState,
    Milestone,
    ModelTier,
    Phase,
    Plan,
    Priority,
    ProjectContext,
    ProjectPayload,
    SessionOptions,
    SessionStatus,
    Task,
    TokenUsage,
    TurnResult,
)

__all__ = [
    "AgentState",
    "Availability",
    "BridgeKind",
    "BridgeStatus",
    "CancelResult",
    "ContextItem",
    "CostRecord",
    "ExecuteResult",
    "ExecutionState",
    "Milestone",
    "ModelTier",
    "Phase",
    "Plan",
    "Priority",
    "ProjectContext",
    "ProjectPayload",
    "SessionOptions",
    "SessionStatus",
    "Task",
    "TokenUsage",
    "TurnResult",
]
