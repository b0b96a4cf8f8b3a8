"""Event type definitions for the Conductor event system.

This module defines the closed set of topics that flow from the orchestration
core to its observers (UI, logging, cost ledger). Every meaningful state change
of a session or an execution run produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event topics in the Conductor system.

    Topics are categorized by:
    - Session: lifecycle, progress and metrics of the single active session
    - Execution: plan walking and per-agent state of the coordinator
    """

    # Session lifecycle
    SESSION_STARTED = "session:started"
    SESSION_PROGRESS = "session:progress"
    SESSION_ERROR = "session:error"
    SESSION_COMPLETE = "session:complete"
    SESSION_APPROVAL_NEEDED = "session:approval-needed"
    SESSION_STATE_CHANGE = "session:state-change"
    SESSION_METRICS_UPDATE = "session:metrics-update"
    SESSION_COST_UPDATE = "session:cost-update"
    SESSION_MESSAGE = "session:message"
    SESSION_CLOSED = "session:closed"

    # Execution coordinator
    EXECUTION_STATE_CHANGE = "execution:state-change"
    EXECUTION_PLAN_READY = "execution:plan-ready"
    EXECUTION_AGENT_STATE = "execution:agent-state"
    EXECUTION_APPROVAL_NEEDED = "execution:approval-needed"
    EXECUTION_TASK_COMPLETE = "execution:task-complete"
    EXECUTION_COST_ALERT = "execution:cost-alert"


class SessionEvent(BaseModel):
    """An event emitted by the orchestration core.

    Each event includes:
    - type: The topic (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - session_id: Which session or run this event belongs to
    - agent_id: Which registry agent the event concerns (if applicable)
    - data: Topic-specific payload

    Payload schemas by topic:

    SESSION_STARTED:
        - sessionId: str - Transport session id
        - pid: int | None - OS process id (native bridge only)

    SESSION_PROGRESS:
        - type: str - "text" or "json"
        - payload: str | dict - The chunk

    SESSION_ERROR:
        - message: str - Human-readable error
        - phase: str - "spawn" or "runtime"

    SESSION_COMPLETE:
        - exitCode: int - Process exit code (0 ok, -1 aborted)
        - success: bool - Whether the session succeeded

    SESSION_APPROVAL_NEEDED:
        - tool: str - Tool requesting permission
        - input: dict - Tool input

    SESSION_STATE_CHANGE / EXECUTION_STATE_CHANGE:
        - previous: str - State before the transition
        - current: str - State after the transition

    SESSION_METRICS_UPDATE:
        - metrics: dict - SessionMetrics snapshot

    SESSION_COST_UPDATE:
        - record: dict - The CostRecord appended to the ledger

    EXECUTION_PLAN_READY:
        - plan: dict - The validated Plan
        - fallback_plan_used: bool - Whether the local plan was substituted
        - fallback_reason: str | None - Why the fallback was used
        - dropped_tasks: list - Tasks removed by assignment validation

    EXECUTION_AGENT_STATE:
        - previous: str - Agent state before
        - current: str - Agent state after
        - task: str - Title of the task being worked on

    EXECUTION_APPROVAL_NEEDED:
        - task: dict - The task awaiting confirmation

    EXECUTION_COST_ALERT:
        - scope: str - "session", "agent" or "tier"
        - level: str - "warning" (80%) or "exceeded" (100%)
        - spent: float / budget: float
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "session:state-change",
                    "timestamp": 1699876543.123,
                    "session_id": "sess_abc123def456",
                    "agent_id": None,
                    "data": {"previous": "executing", "current": "monitoring"},
                }
            ]
        }
    }


class SessionMetrics(BaseModel):
    """Counters reported by the periodic metrics update of a session.

    Attributes:
        message_count: Progress chunks received while the session was live
        error_count: Runtime error events received
        elapsed_ms: Milliseconds since the session started
        elapsed: Human-readable elapsed time
        prompt_length: Length of the prompt handed to the bridge
        node_count / connection_count: Size of the graph payload, if any
        exit_code: Process exit code once complete
    """

    message_count: int = 0
    error_count: int = 0
    elapsed_ms: int = 0
    elapsed: str = "0ms"
    prompt_length: int = 0
    node_count: int = 0
    connection_count: int = 0
    exit_code: int | None = None
