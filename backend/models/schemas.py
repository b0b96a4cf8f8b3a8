"""Pydantic schemas for plans, sessions, transport results and the HTTP API.

This module defines all the data models shared by the orchestration core, the
HTTP API and WebSocket handlers. All models use Pydantic v2; JSON uses
camelCase aliases while Python attributes stay snake_case.
"""

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ModelTier(StrEnum):
    """Cost/capability class of a task, phase or agent."""

    FLASH = "flash"
    STANDARD = "standard"
    OPUS = "opus"


class Priority(StrEnum):
    """Declared priority of a context item or task."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SessionStatus(StrEnum):
    """Session lifecycle status."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    EXECUTING = "executing"
    MONITORING = "monitoring"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset(
    {
        SessionStatus.INITIALIZING,
        SessionStatus.EXECUTING,
        SessionStatus.MONITORING,
        SessionStatus.PAUSED,
    }
)
TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class BridgeKind(StrEnum):
    """The two transport variants."""

    NATIVE = "native"
    REMOTE = "remote"


class BridgeStatus(StrEnum):
    """Status of a single transport turn."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AgentState(StrEnum):
    """Visual/logical state of a registry agent during execution."""

    IDLE = "idle"
    THINKING = "thinking"
    RESPONDING = "responding"
    WAITING = "waiting"
    DONE = "done"
    ERROR = "error"


class ExecutionState(StrEnum):
    """State of an ExecutionCoordinator run."""

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    AWAITING_APPROVAL = "awaiting_approval"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Plan
# =============================================================================


class Task(CamelModel):
    """A single unit of work assigned to one registry agent."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    title: str = Field(min_length=1, description="What the agent should do")
    priority: Priority = Field(description="Declared priority")
    assigned_to: str = Field(default="", description="AgentRegistry id")
    tier: ModelTier = Field(default=ModelTier.STANDARD, description="Capability tier")
    phase: str = Field(default="", description="Name of the owning phase")
    description: str = ""
    requires_confirmation: bool = Field(
        default=False,
        description="Halt for external confirmation unless hands-off",
    )


class Milestone(CamelModel):
    """An ordered group of tasks executed sequentially."""

    title: str = ""
    tasks: list[Task] = Field(default_factory=list)


class Phase(CamelModel):
    """A named stage of the plan routed to one capability tier."""

    name: str = Field(min_length=1)
    routing_tier: ModelTier = ModelTier.STANDARD
    rationale: str = ""
    milestones: list[Milestone] = Field(default_factory=list)

    @model_validator(mode="after")
    def _stamp_task_phase(self) -> "Phase":
        for milestone in self.milestones:
            for task in milestone.tasks:
                if not task.phase:
                    task.phase = self.name
        return self

    def iter_tasks(self) -> list[Task]:
        return [task for milestone in self.milestones for task in milestone.tasks]


class Plan(CamelModel):
    """Phases → milestones → tasks describing how context items will be executed.

    Unknown fields in planner output are ignored, never carried along.
    """

    phases: list[Phase] = Field(min_length=1)
    estimated_rounds: int | None = Field(default=None, ge=0)
    summary: str = ""

    @model_validator(mode="after")
    def _default_rounds(self) -> "Plan":
        if self.estimated_rounds is None:
            self.estimated_rounds = sum(len(phase.milestones) for phase in self.phases)
        return self

    def iter_tasks(self) -> list[Task]:
        return [task for phase in self.phases for task in phase.iter_tasks()]

    @property
    def task_count(self) -> int:
        return len(self.iter_tasks())


# =============================================================================
# Project context
# =============================================================================


class GraphNode(CamelModel):
    """A node of the externally supplied project graph."""

    id: str
    text: str = ""
    node_type: str = "general"
    priority: str | None = None
    phase: str | None = None
    assigned_agent: str | None = None
    agent_status: str | None = None


class GraphConnection(CamelModel):
    """A connection between two graph nodes."""

    source_id: str
    target_id: str
    directed: str | None = None


class ProjectPayload(CamelModel):
    """The serialized graph handed over by the editor."""

    nodes: list[GraphNode] = Field(default_factory=list)
    connections: list[GraphConnection] = Field(default_factory=list)
    project_name: str | None = None
    stack: list[str] = Field(default_factory=list)


class ContextItem(CamelModel):
    """A graph node reduced to what planning needs."""

    id: str
    text: str
    priority: Priority = Priority.MEDIUM
    node_type: str = "feature"
    assigned_agent: str | None = None
    phase: str | None = None


class ProjectContext(CamelModel):
    """Project context sliced out of the graph payload."""

    project_name: str = "Untitled Project"
    stack: list[str] = Field(default_factory=list)
    features: list[ContextItem] = Field(default_factory=list)
    constraints: list[ContextItem] = Field(default_factory=list)
    risks: list[ContextItem] = Field(default_factory=list)


# =============================================================================
# Transport
# =============================================================================


class SessionOptions(CamelModel):
    """Options for starting a session; retained for one-click retry."""

    prompt: str | None = Field(default=None, description="Prompt for the agent turn")
    context: ProjectPayload | None = Field(
        default=None, description="Graph payload serialized when no prompt is given"
    )
    project_name: str | None = None
    output_dir: str | None = None
    model: str | None = None
    hands_off: bool = False


class ExecuteResult(CamelModel):
    session_id: str
    pid: int | None = None


class CancelResult(CamelModel):
    cancelled: bool
    reason: str | None = None
    pid: int | None = None


class Availability(CamelModel):
    available: bool
    version: str | None = None
    path: str | None = None
    error: str | None = None


class TokenUsage(CamelModel):
    """Token usage of one transport turn."""

    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    # Set when the transport reports its own cost (native CLI result message)
    cost_usd: float | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class TurnResult(CamelModel):
    """Outcome of a full bridge turn (execute until complete)."""

    text: str
    exit_code: int
    success: bool
    usage: TokenUsage = Field(default_factory=TokenUsage)


class CostRecord(CamelModel):
    """One entry of the append-only cost ledger."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    session_id: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    timestamp: float = Field(default_factory=time.time)


# =============================================================================
# API
# =============================================================================


class SessionResponse(BaseModel):
    """Response for session start/retry."""

    session_id: str = Field(description="Unique session identifier", examples=["sess_abc123def456"])
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/sess_abc123def456"],
    )
    status: SessionStatus


class SessionSummaryResponse(BaseModel):
    """Snapshot of the controller's current session."""

    session_id: str | None
    status: SessionStatus
    bridge: BridgeKind
    project_name: str | None = None
    hands_off: bool = False
    started_at: float | None = None
    completed_at: float | None = None
    elapsed: str = "0ms"
    message_count: int = 0
    error_count: int = 0
    exit_code: int | None = None
    transcript_length: int = 0
    pending_approval: dict[str, Any] | None = None


class ApprovalRequest(BaseModel):
    approved: bool = True


class MessageRequest(BaseModel):
    text: str = Field(min_length=1, max_length=10000)


class PlanRequest(BaseModel):
    """Request body for planning and executing a graph payload."""

    model_config = ConfigDict(populate_by_name=True)

    payload: ProjectPayload
    hands_off: bool = Field(default=False, alias="handsOff")
    use_planner: bool = Field(
        default=True,
        alias="usePlanner",
        description="Ask the planner agent first; False goes straight to the local plan",
    )


class PlanResponse(BaseModel):
    run_id: str
    plan: Plan
    fallback_plan_used: bool
    fallback_reason: str | None = None
    dropped_tasks: list[dict[str, Any]] = Field(default_factory=list)


class AgentRoleResponse(BaseModel):
    id: str
    label: str
    tier: ModelTier
    is_human: bool
    capabilities: list[str]
    reports_to: str | None
    state: AgentState = AgentState.IDLE


class CostSummaryResponse(BaseModel):
    records: list[CostRecord]
    total_cost: float
    total_tokens: int


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    bridge: BridgeKind
    bridge_available: bool
    version: str | None = None
