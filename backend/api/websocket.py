"""WebSocket handler for real-time event streaming.

This module streams session and execution events to the frontend and
receives control commands from it:

- ``pause-request`` / ``resume-request`` / ``cancel-request``
- ``message`` (CEO chat input, ``{"type": "message", "text": ...}``)
- ``approval`` (``{"type": "approval", "approved": true}``)
- ``ping``

Connections for an execution run (``run_...`` ids) steer the
ExecutionCoordinator; every other id steers the SessionController.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from errors import ConductorError
from events import EventType, SessionEvent, get_event_bus

if TYPE_CHECKING:
    from execution_coordinator import ExecutionCoordinator
    from session_controller import SessionController

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_session_controller: "SessionController | None" = None
_execution_coordinator: "ExecutionCoordinator | None" = None

RUN_ID_PREFIX = "run_"


def set_session_controller(controller: "SessionController") -> None:
    """Set the session controller used by WebSocket command handlers."""
    global _session_controller
    _session_controller = controller
    logger.info("websocket_session_controller_configured")


def set_execution_coordinator(coordinator: "ExecutionCoordinator") -> None:
    global _execution_coordinator
    _execution_coordinator = coordinator


def get_session_controller() -> "SessionController":
    if _session_controller is None:
        raise RuntimeError(
            "SessionController not configured for WebSocket handlers. "
            "Call set_session_controller() during startup."
        )
    return _session_controller


def get_execution_coordinator() -> "ExecutionCoordinator":
    if _execution_coordinator is None:
        raise RuntimeError(
            "ExecutionCoordinator not configured for WebSocket handlers. "
            "Call set_execution_coordinator() during startup."
        )
    return _execution_coordinator


@websocket_router.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    Args:
        websocket: The WebSocket connection.
        session_id: Session or run id to stream events for.
    """
    await websocket.accept()

    logger.info("websocket_connected", session_id=session_id)

    event_bus = get_event_bus()

    # Subscribe first, then replay history; duplicates are skipped by timestamp
    subscription = event_bus.subscribe(session_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(session_id)
        if history:
            logger.info(
                "replaying_event_history",
                session_id=session_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", session_id=session_id)
                    return

        async def send_events() -> None:
            """Forward bus events to the client until the session is closed."""
            try:
                async for event in subscription:
                    if event.timestamp <= last_replay_timestamp:
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
                logger.info("session_closed_sentinel", session_id=session_id)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", session_id=session_id)
            except Exception as e:
                logger.error("websocket_send_error", session_id=session_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and dispatch commands from the client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", session_id=session_id)
                        continue
                    command_type = data.get("type")
                    logger.info(
                        "command_received",
                        session_id=session_id,
                        command_type=command_type,
                    )

                    if command_type == "ping":
                        await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
                        continue
                    await handle_command(session_id, command_type, data)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", session_id=session_id)
            except Exception as e:
                logger.error("websocket_receive_error", session_id=session_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        _, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id)
    except Exception as e:
        logger.error("websocket_error", session_id=session_id, error=str(e))
    finally:
        subscription.unsubscribe()
        logger.info("websocket_cleanup_complete", session_id=session_id)


async def handle_command(session_id: str, command_type: Any, data: dict[str, Any]) -> None:
    """Dispatch a control command to the controller or the coordinator.

    Rejected commands are reported as a SESSION_ERROR event with phase
    ``command`` rather than closing the connection.
    """
    try:
        if session_id.startswith(RUN_ID_PREFIX):
            await _handle_run_command(command_type, data)
        else:
            await _handle_session_command(command_type, data)
    except (ConductorError, ValueError) as e:
        logger.warning(
            "command_rejected",
            session_id=session_id,
            command_type=command_type,
            error=str(e),
        )
        await get_event_bus().publish(
            SessionEvent(
                type=EventType.SESSION_ERROR,
                session_id=session_id,
                data={"message": str(e), "phase": "command", "command": command_type},
            )
        )


async def _handle_session_command(command_type: Any, data: dict[str, Any]) -> None:
    controller = get_session_controller()
    if command_type == "pause-request":
        await controller.pause_session()
    elif command_type == "resume-request":
        await controller.resume_session()
    elif command_type == "cancel-request":
        await controller.cancel_session()
    elif command_type == "message":
        text = str(data.get("text", "")).strip()
        if not text:
            raise ValueError("Message text is empty")
        await controller.post_message(text)
    elif command_type == "approval":
        await controller.acknowledge_approval(bool(data.get("approved", True)))
    else:
        logger.warning("unknown_command", command_type=command_type)


async def _handle_run_command(command_type: Any, data: dict[str, Any]) -> None:
    coordinator = get_execution_coordinator()
    if command_type == "pause-request":
        await coordinator.pause()
    elif command_type == "resume-request":
        await coordinator.resume()
    elif command_type == "approval":
        if data.get("approved", True):
            await coordinator.resume()
        else:
            await coordinator.cancel()
    elif command_type == "cancel-request":
        await coordinator.cancel()
    elif command_type == "message":
        text = str(data.get("text", "")).strip()
        if not text:
            raise ValueError("Message text is empty")
        coordinator.post_message(text)
    else:
        logger.warning("unknown_command", command_type=command_type)
