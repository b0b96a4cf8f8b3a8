"""HTTP API routes for the Conductor backend.

This module defines the HTTP endpoints for session control, plan execution,
the agent roster, the cost ledger and health checks. Real-time events are
handled via WebSocket in websocket.py.

Errors raised by the core map onto HTTP statuses:
- AlreadyRunningError / InvalidTransitionError: 409 Conflict
- TransportError (SpawnError, NetworkError): 503 Service Unavailable
- ParseError / ValidationError / ValueError: 422 Unprocessable Entity
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, NoReturn

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from errors import (
    AlreadyRunningError,
    ConductorError,
    InvalidTransitionError,
    ParseError,
    TransportError,
    ValidationError,
)
from models.schemas import (
    AgentRoleResponse,
    AgentState,
    ApprovalRequest,
    CancelResult,
    CostSummaryResponse,
    HealthResponse,
    MessageRequest,
    PlanRequest,
    PlanResponse,
    SessionOptions,
    SessionResponse,
    SessionSummaryResponse,
)

if TYPE_CHECKING:
    from agents.registry import AgentRegistry
    from execution_coordinator import ExecutionCoordinator
    from models.database import SessionStore
    from session_controller import SessionController

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Dependencies (set during application startup)
# -----------------------------------------------------------------------------

_session_controller: SessionController | None = None
_execution_coordinator: ExecutionCoordinator | None = None
_agent_registry: AgentRegistry | None = None


def set_session_controller(controller: SessionController) -> None:
    """Set the session controller instance for the routes.

    This should be called during application startup.
    """
    global _session_controller
    _session_controller = controller
    logger.info("session_controller_configured")


def get_session_controller() -> SessionController:
    """Get the session controller instance.

    Raises:
        RuntimeError: If the controller has not been configured.
    """
    if _session_controller is None:
        logger.error("session_controller_not_configured")
        raise RuntimeError(
            "SessionController not configured. Call set_session_controller() during startup."
        )
    return _session_controller


def set_execution_coordinator(coordinator: ExecutionCoordinator) -> None:
    global _execution_coordinator
    _execution_coordinator = coordinator
    logger.info("execution_coordinator_configured")


def get_execution_coordinator() -> ExecutionCoordinator:
    if _execution_coordinator is None:
        logger.error("execution_coordinator_not_configured")
        raise RuntimeError(
            "ExecutionCoordinator not configured. Call set_execution_coordinator() during startup."
        )
    return _execution_coordinator


def set_agent_registry(registry: AgentRegistry) -> None:
    global _agent_registry
    _agent_registry = registry


def get_session_store() -> SessionStore | None:
    return get_session_controller().session_store


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _raise_http(error: Exception, action: str) -> NoReturn:
    """Translate a core error into an HTTPException."""
    if isinstance(error, (AlreadyRunningError, InvalidTransitionError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, TransportError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(error, (ParseError, ValidationError, ValueError)):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        logger.error(f"{action}_failed", error=str(error), error_type=type(error).__name__)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action.replace('_', ' ')}: {error}",
        ) from error

    detail: Any = error.to_dict() if isinstance(error, ConductorError) else {"message": str(error)}
    logger.warning(f"{action}_rejected", status_code=code, **detail)
    raise HTTPException(status_code=code, detail=detail) from error


def _session_response(controller: SessionController) -> SessionResponse:
    session = controller.session
    if session is None:
        logger.error("session_response_missing_session")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session was not recorded by the controller",
        )
    return SessionResponse(
        session_id=session.id,
        websocket_url=f"/ws/{session.id}",
        status=session.status,
    )


# -----------------------------------------------------------------------------
# Session control
# -----------------------------------------------------------------------------


@router.post(
    "/api/session",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a session",
    description="Start a new agent session from a prompt or a graph payload.",
)
async def start_session(request: SessionOptions) -> SessionResponse:
    """Start a session on the active transport.

    Returns:
        SessionResponse with session_id, websocket_url and status.
    """
    controller = get_session_controller()
    try:
        await controller.start_session(request)
    except Exception as e:
        _raise_http(e, "start_session")

    logger.info(
        "session_started",
        session_id=controller.session.id if controller.session else None,
        hands_off=request.hands_off,
    )
    return _session_response(controller)


@router.get(
    "/api/session",
    response_model=SessionSummaryResponse,
    summary="Current session",
    description="Snapshot of the current (or last) session.",
)
async def get_session() -> SessionSummaryResponse:
    return get_session_controller().get_summary()


@router.post(
    "/api/session/pause",
    response_model=SessionSummaryResponse,
    summary="Pause the session",
)
async def pause_session() -> SessionSummaryResponse:
    controller = get_session_controller()
    try:
        await controller.pause_session()
    except Exception as e:
        _raise_http(e, "pause_session")
    return controller.get_summary()


@router.post(
    "/api/session/resume",
    response_model=SessionSummaryResponse,
    summary="Resume the session",
)
async def resume_session() -> SessionSummaryResponse:
    controller = get_session_controller()
    try:
        await controller.resume_session()
    except Exception as e:
        _raise_http(e, "resume_session")
    return controller.get_summary()


@router.post(
    "/api/session/cancel",
    response_model=CancelResult,
    summary="Cancel the session",
    description="Cancel the active session. Returns cancelled=false when nothing is running.",
)
async def cancel_session() -> CancelResult:
    controller = get_session_controller()
    try:
        return await controller.cancel_session()
    except Exception as e:
        _raise_http(e, "cancel_session")


@router.post(
    "/api/session/retry",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Retry the last session",
)
async def retry_session() -> SessionResponse:
    controller = get_session_controller()
    try:
        await controller.retry_session()
    except Exception as e:
        _raise_http(e, "retry_session")
    return _session_response(controller)


@router.post(
    "/api/session/approval",
    summary="Answer a pending approval",
)
async def acknowledge_approval(request: ApprovalRequest) -> dict[str, bool]:
    controller = get_session_controller()
    try:
        acknowledged = await controller.acknowledge_approval(request.approved)
    except Exception as e:
        _raise_http(e, "acknowledge_approval")
    if not acknowledged:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "No approval is pending"},
        )
    return {"acknowledged": True, "approved": request.approved}


@router.post(
    "/api/session/message",
    summary="Send a chat message",
    description="Route CEO chat input to the running plan, or the session otherwise.",
)
async def post_message(request: MessageRequest) -> dict[str, Any]:
    controller = get_session_controller()
    coordinator = get_execution_coordinator()
    if coordinator.is_running:
        coordinator.post_message(request.text)
        return {"routedTo": "execution", "runId": coordinator.run.run_id if coordinator.run else None}
    message = await controller.post_message(request.text)
    return {"routedTo": "session", "message": message}


@router.get(
    "/api/sessions",
    summary="Session history",
    description="Recently finished and running sessions, newest first.",
)
async def list_sessions(
    limit: Annotated[int, Query(description="Maximum sessions to return", ge=1, le=50)] = 20,
) -> list[dict[str, Any]]:
    store = get_session_store()
    if store is None:
        return []
    return await store.list_sessions(limit=limit)


# -----------------------------------------------------------------------------
# Plan execution
# -----------------------------------------------------------------------------


@router.post(
    "/api/plan",
    response_model=PlanResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Plan and execute a project",
    description=(
        "Ask the planner for a plan (falling back to the local plan) and walk it "
        "through the agent team in the background."
    ),
)
async def start_plan(request: PlanRequest) -> PlanResponse:
    coordinator = get_execution_coordinator()
    try:
        run = await coordinator.start_session(
            request.payload,
            hands_off=request.hands_off,
            use_planner=request.use_planner,
        )
    except Exception as e:
        _raise_http(e, "start_plan")

    return PlanResponse(
        run_id=run.run_id,
        plan=run.plan,
        fallback_plan_used=run.fallback_plan_used,
        fallback_reason=run.fallback_reason,
        dropped_tasks=run.dropped_tasks,
    )


@router.get("/api/plan", summary="Execution run summary")
async def get_plan_summary() -> dict[str, Any]:
    return get_execution_coordinator().get_summary()


@router.post("/api/plan/pause", summary="Pause the execution run")
async def pause_plan() -> dict[str, Any]:
    coordinator = get_execution_coordinator()
    try:
        await coordinator.pause()
    except Exception as e:
        _raise_http(e, "pause_plan")
    return coordinator.get_summary()


@router.post(
    "/api/plan/resume",
    summary="Resume the execution run",
    description="Resume a paused run or confirm the task awaiting approval.",
)
async def resume_plan() -> dict[str, Any]:
    coordinator = get_execution_coordinator()
    try:
        await coordinator.resume()
    except Exception as e:
        _raise_http(e, "resume_plan")
    return coordinator.get_summary()


@router.post("/api/plan/cancel", summary="Cancel the execution run")
async def cancel_plan() -> dict[str, Any]:
    coordinator = get_execution_coordinator()
    cancelled = await coordinator.cancel()
    return {"cancelled": cancelled, **coordinator.get_summary()}


# -----------------------------------------------------------------------------
# Roster, costs, health
# -----------------------------------------------------------------------------


@router.get(
    "/api/agents",
    response_model=list[AgentRoleResponse],
    summary="Agent roster",
    description="Every agent role with its tier and current execution state.",
)
async def list_agents() -> list[AgentRoleResponse]:
    coordinator = get_execution_coordinator()
    registry = _agent_registry or coordinator.registry
    states = coordinator.agent_states()
    return [
        AgentRoleResponse(
            id=entry.id,
            label=entry.label,
            tier=entry.tier,
            is_human=entry.is_human,
            capabilities=list(entry.capabilities),
            reports_to=entry.reports_to,
            state=states.get(entry.id, AgentState.IDLE),
        )
        for entry in registry.get_all()
    ]


@router.get(
    "/api/costs",
    response_model=CostSummaryResponse,
    summary="Cost ledger",
    description="Every CostRecord appended so far, oldest first.",
)
async def list_costs() -> CostSummaryResponse:
    controller = get_session_controller()
    try:
        records = await controller.get_cost_records()
    except Exception as e:
        _raise_http(e, "read_cost_records")
    return CostSummaryResponse(
        records=records,
        total_cost=round(sum(record.total_cost for record in records), 6),
        total_tokens=sum(record.total_tokens for record in records),
    )


@router.get(
    "/api/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check with the active transport's availability.",
)
async def health_check() -> HealthResponse:
    controller = get_session_controller()
    try:
        availability = await controller.bridge.detect_availability()
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))
        return HealthResponse(status="degraded", bridge=controller.bridge_kind, bridge_available=False)

    return HealthResponse(
        status="healthy" if availability.available else "degraded",
        bridge=controller.bridge_kind,
        bridge_available=availability.available,
        version=availability.version,
    )
