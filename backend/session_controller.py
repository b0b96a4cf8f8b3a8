"""Session controller: the state machine around a single agent session.

The SessionController owns the lifecycle of the one session that may be
active at a time. It wraps the TransportBridge selected for the process,
turns the bridge's event stream into published session events, and exposes
start/pause/resume/cancel/retry.

States:
    idle → initializing → executing → monitoring ⇄ paused
    {executing, monitoring, paused} → {completed, failed, cancelled}
    initializing → {failed, cancelled}
    {completed, failed, cancelled} → initializing (a new start_session)

Usage:
    >>> controller = SessionController(bridge, event_bus, session_store)
    >>> session = await controller.start_session(SessionOptions(prompt="Build a todo app"))
    >>> await controller.pause_session()
    >>> await controller.resume_session()
    >>> result = await controller.cancel_session()
"""

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog

from agents.context import ContextManager
from agents.utils import build_cost_record, format_elapsed
from bridges.base import BridgeEvent, BridgeEventKind, TransportBridge
from bridges.remote import RemoteAPIBridge
from config import Settings, settings as default_settings
from errors import (
    AlreadyRunningError,
    InvalidTransitionError,
    NetworkError,
    SpawnError,
)
from events.bus import EventBus
from events.types import EventType, SessionEvent
from metrics import MetricsCollector
from models.database import SessionStore
from models.schemas import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BridgeKind,
    CancelResult,
    CostRecord,
    SessionOptions,
    SessionStatus,
    SessionSummaryResponse,
)

logger = structlog.get_logger(__name__)


TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.INITIALIZING}),
    SessionStatus.INITIALIZING: frozenset(
        {SessionStatus.EXECUTING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.EXECUTING: frozenset(
        {
            SessionStatus.MONITORING,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.MONITORING: frozenset(
        {
            SessionStatus.PAUSED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.PAUSED: frozenset(
        {
            SessionStatus.MONITORING,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.COMPLETED: frozenset({SessionStatus.INITIALIZING}),
    SessionStatus.FAILED: frozenset({SessionStatus.INITIALIZING}),
    SessionStatus.CANCELLED: frozenset({SessionStatus.INITIALIZING}),
}

# States in which the periodic metrics update runs
METERED_STATUSES = frozenset({SessionStatus.EXECUTING, SessionStatus.MONITORING})


@dataclass
class Session:
    """The controller's record of one session.

    Attributes:
        id: Controller session id (e.g. "sess_abc123def456")
        status: Current lifecycle status
        started_at: Unix timestamp of start_session
        last_prompt: Prompt handed to the bridge, kept for retry
        last_options: Options of the start, kept for retry
        hands_off: Whether approval gates are bypassed
        transport_session_id: Session id reported by the bridge
        pid: OS process id (native bridge only)
        project_name: Project the session works on
        completed_at: Unix timestamp of the terminal transition
        exit_code: Exit code reported on completion
        transcript: Text progress chunks in emission order
        pending_approval: Outstanding approval-needed signal, if any
        messages: System and chat messages recorded during the session
    """

    id: str
    status: SessionStatus
    started_at: float
    last_prompt: str
    last_options: SessionOptions
    hands_off: bool = False
    transport_session_id: str | None = None
    pid: int | None = None
    project_name: str | None = None
    completed_at: float | None = None
    exit_code: int | None = None
    transcript: list[str] = field(default_factory=list)
    pending_approval: dict[str, Any] | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)

    @property
    def transcript_text(self) -> str:
        return "".join(self.transcript)

    def add_message(self, role: str, text: str) -> dict[str, Any]:
        message = {"role": role, "text": text, "timestamp": time.time()}
        self.messages.append(message)
        return message


class SessionController:
    """Owns the session state machine and the active TransportBridge.

    Thread Safety:
        start_session holds an asyncio.Lock across its guard and spawn call, so
        concurrent starts are serialized and all but one are rejected.

    Attributes:
        bridge: The transport selected for this process
        event_bus: Event bus that session events are published on
        session_store: Optional store for the cost ledger and session history
        metrics_collector: Collector for message/error counters
        context_manager: Serializes graph payloads into prompts
    """

    def __init__(
        self,
        bridge: TransportBridge,
        event_bus: EventBus,
        session_store: SessionStore | None = None,
        metrics_collector: MetricsCollector | None = None,
        context_manager: ContextManager | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.bridge = bridge
        self.event_bus = event_bus
        self.session_store = session_store
        self.metrics_collector = metrics_collector or MetricsCollector()
        self.context_manager = context_manager or ContextManager()
        self.settings = settings or default_settings

        self._session: Session | None = None
        self._lock = asyncio.Lock()
        self._pending: list[BridgeEvent] = []
        self._draining = False
        self._cancelling = False
        self._completion_during_cancel: BridgeEvent | None = None
        self._start_done = asyncio.Event()
        self._start_done.set()
        self._metrics_task: asyncio.Task[None] | None = None
        self._cost_records: list[CostRecord] = []
        self._unsubscribe_bridge = bridge.add_listener(self._on_bridge_event)
        logger.info("session_controller_initialized", bridge=bridge.kind.value)

    # -----------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._session.status if self._session is not None else SessionStatus.IDLE

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def bridge_kind(self) -> BridgeKind:
        return self.bridge.kind

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def _generate_session_id(self) -> str:
        return f"sess_{uuid.uuid4().hex[:12]}"

    # -----------------------------------------------------------------
    # Start
    # -----------------------------------------------------------------

    def _build_prompt(self, options: SessionOptions) -> str:
        if options.context is not None:
            self.context_manager.load(options.context, options.project_name)
        if options.prompt and options.prompt.strip():
            return options.prompt
        if options.context is not None:
            return self.context_manager.serialize_prompt()
        raise ValueError("A prompt or a context payload is required to start a session")

    async def start_session(self, options: SessionOptions) -> Session:
        """Start a new session on the active bridge.

        Args:
            options: Prompt (or graph payload), model, output dir and hands-off flag.

        Returns:
            The session, in state ``executing``.

        Raises:
            AlreadyRunningError: If a session is initializing, executing,
                monitoring or paused.
            SpawnError: If the native transport is unavailable (status
                unchanged) or failed to start (status ``failed``).
            NetworkError: If the remote transport has no credentials (status
                unchanged) or the call failed (status ``failed``).
        """
        async with self._lock:
            if self.is_active:
                raise AlreadyRunningError(
                    f"Session {self._session.id if self._session else ''} is {self.status.value}",
                    status=self.status.value,
                )

            prompt = self._build_prompt(options)
            availability = await self.bridge.detect_availability()
            if not availability.available:
                logger.warning(
                    "start_session_bridge_unavailable",
                    bridge=self.bridge.kind.value,
                    error=availability.error,
                )
                error_cls = SpawnError if self.bridge.kind == BridgeKind.NATIVE else NetworkError
                raise error_cls(
                    availability.error or f"{self.bridge.kind.value} transport is unavailable",
                    bridge=self.bridge.kind.value,
                )

            session = Session(
                id=self._generate_session_id(),
                status=self.status,
                started_at=time.time(),
                last_prompt=prompt,
                last_options=options,
                hands_off=options.hands_off,
                project_name=options.project_name
                or (self.context_manager.context.project_name if options.context else None),
            )
            self._session = session
            self._pending.clear()
            self._completion_during_cancel = None
            self._start_done.clear()

            logger.info(
                "start_session_begin",
                session_id=session.id,
                bridge=self.bridge.kind.value,
                prompt_length=len(prompt),
                hands_off=options.hands_off,
            )
            try:
                await self._transition(SessionStatus.INITIALIZING)
                self.metrics_collector.start(
                    session.id,
                    prompt_length=len(prompt),
                    node_count=self.context_manager.node_count if options.context else 0,
                    connection_count=self.context_manager.connection_count if options.context else 0,
                )
                await self._persist_session(session)

                try:
                    result = await self.bridge.execute(prompt, options)
                except Exception as e:
                    await self._fail_start(session, e)
                    raise

                session.transport_session_id = result.session_id
                session.pid = result.pid
                await self._transition(SessionStatus.EXECUTING)
                await self._publish(
                    EventType.SESSION_STARTED,
                    {"sessionId": result.session_id, "pid": result.pid},
                )
                logger.info(
                    "start_session_complete",
                    session_id=session.id,
                    transport_session_id=result.session_id,
                    pid=result.pid,
                )
            finally:
                self._start_done.set()

        await self._drain_pending()
        return session

    async def _fail_start(self, session: Session, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error)
        logger.error(
            "start_session_failed",
            session_id=session.id,
            error=message,
            error_type=type(error).__name__,
        )
        session.completed_at = time.time()
        self.metrics_collector.finish(session.id)
        await self._transition(SessionStatus.FAILED)
        await self._publish(EventType.SESSION_ERROR, {"message": message, "phase": "spawn"})
        await self._persist_session(session)

    async def retry_session(self) -> Session:
        """Start again with the prompt and options of the last session.

        Raises:
            InvalidTransitionError: If there is no finished session to retry.
        """
        session = self._session
        if session is None or session.status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(self.status.value, "retry")
        options = session.last_options.model_copy(update={"prompt": session.last_prompt})
        logger.info("retry_session", previous_session_id=session.id)
        return await self.start_session(options)

    # -----------------------------------------------------------------
    # Pause / resume / cancel
    # -----------------------------------------------------------------

    async def pause_session(self) -> None:
        """Pause a monitoring session.

        Raises:
            InvalidTransitionError: If the session is not monitoring.
        """
        if self.status != SessionStatus.MONITORING or self._session is None:
            raise InvalidTransitionError(self.status.value, "pause")
        await self._transition(SessionStatus.PAUSED)
        await self._system_message("Session paused by CEO.")

    async def resume_session(self) -> None:
        """Resume a paused session.

        Raises:
            InvalidTransitionError: If the session is not paused.
        """
        if self.status != SessionStatus.PAUSED or self._session is None:
            raise InvalidTransitionError(self.status.value, "resume")
        await self._transition(SessionStatus.MONITORING)
        await self._system_message("Session resumed by CEO.")

    async def cancel_session(self) -> CancelResult:
        """Cancel the active session and wait for the bridge to acknowledge.

        Returns ``cancelled=False`` without any transition when there is no
        active session.
        """
        if not self._start_done.is_set():
            # The spawn call is in flight; cancel whatever it produces
            await self._start_done.wait()

        session = self._session
        if session is None or self.status not in (
            SessionStatus.EXECUTING,
            SessionStatus.MONITORING,
            SessionStatus.PAUSED,
        ):
            logger.info("cancel_session_noop", status=self.status.value)
            return CancelResult(cancelled=False, reason="No active session")

        logger.info("cancel_session_start", session_id=session.id, status=self.status.value)
        self._cancelling = True
        try:
            result = await self.bridge.cancel()
        finally:
            self._cancelling = False

        completion = self._completion_during_cancel
        self._completion_during_cancel = None
        if not result.cancelled:
            logger.warning("cancel_session_rejected", session_id=session.id, reason=result.reason)
            if completion is not None:
                await self._handle_bridge_event(completion)
            return result

        if session.status in TERMINAL_STATUSES:
            return CancelResult(cancelled=False, reason=f"Session already {session.status.value}")

        await self._finish(session, SessionStatus.CANCELLED, exit_code=-1, success=False)
        await self._system_message("Session cancelled by CEO.")
        logger.info("cancel_session_complete", session_id=session.id)
        return CancelResult(cancelled=True, pid=result.pid or session.pid)

    # -----------------------------------------------------------------
    # Approvals, messages, capability probes
    # -----------------------------------------------------------------

    async def acknowledge_approval(self, approved: bool) -> bool:
        """Answer the outstanding approval-needed signal.

        Returns:
            False if no approval is pending.
        """
        session = self._session
        if session is None or session.pending_approval is None or not self.is_active:
            return False
        acknowledged = await self.bridge.acknowledge_approval(approved)
        tool = session.pending_approval.get("tool")
        session.pending_approval = None
        await self._system_message(f"{'Approved' if approved else 'Denied'} use of {tool} by CEO.")
        return acknowledged

    async def post_message(self, text: str) -> dict[str, Any]:
        """Record a chat message from the CEO in the session and the context."""
        self.context_manager.add_message("ceo", "@all", text)
        if self._session is None:
            return {"role": "ceo", "text": text, "timestamp": time.time()}
        message = self._session.add_message("ceo", text)
        await self._publish(EventType.SESSION_MESSAGE, message)
        return message

    def has_browser_api_key(self) -> bool:
        """Whether a remote-bridge session could be started."""
        if isinstance(self.bridge, RemoteAPIBridge):
            return self.bridge.has_any_api_key()
        return bool(self.settings.anthropic_api_key or self.settings.openai_api_key)

    # -----------------------------------------------------------------
    # Bridge events
    # -----------------------------------------------------------------

    async def _on_bridge_event(self, event: BridgeEvent) -> None:
        if self._session is None or self.status == SessionStatus.IDLE:
            logger.debug("bridge_event_dropped", kind=event.kind.value, reason="no_session")
            return
        if self.status in TERMINAL_STATUSES:
            logger.debug(
                "bridge_event_dropped",
                kind=event.kind.value,
                session_id=self._session.id,
                reason="terminal",
            )
            return
        if not self._start_done.is_set() or self._draining:
            self._pending.append(event)
            return
        await self._handle_bridge_event(event)

    async def _drain_pending(self) -> None:
        """Replay events that arrived while the spawn call was in flight, in order."""
        self._draining = True
        try:
            while self._pending:
                await self._handle_bridge_event(self._pending.pop(0))
        finally:
            self._draining = False

    async def _handle_bridge_event(self, event: BridgeEvent) -> None:
        session = self._session
        if session is None or session.status in TERMINAL_STATUSES:
            return
        if (
            event.session_id is not None
            and session.transport_session_id is not None
            and event.session_id != session.transport_session_id
        ):
            logger.debug(
                "bridge_event_uncorrelated",
                session_id=session.id,
                event_session_id=event.session_id,
            )
            return

        if event.kind == BridgeEventKind.STARTED:
            return

        if event.kind == BridgeEventKind.COMPLETE:
            if self._cancelling:
                self._completion_during_cancel = event
                return
            exit_code = int(event.data.get("exitCode", 1))
            success = bool(event.data.get("success", exit_code == 0))
            target = SessionStatus.COMPLETED if success else SessionStatus.FAILED
            await self._finish(session, target, exit_code=exit_code, success=success)
            await self._publish(EventType.SESSION_COMPLETE, {"exitCode": exit_code, "success": success})
            return

        if session.status == SessionStatus.EXECUTING:
            await self._transition(SessionStatus.MONITORING)

        if event.kind == BridgeEventKind.PROGRESS:
            self.metrics_collector.record_message(session.id)
            text = self.bridge.progress_text(event.data)
            if text:
                session.transcript.append(text)
            await self._publish(
                EventType.SESSION_PROGRESS,
                {"type": event.data.get("type", "text"), "payload": event.data.get("payload")},
            )
        elif event.kind == BridgeEventKind.APPROVAL_NEEDED:
            approval = {"tool": event.data.get("tool"), "input": event.data.get("input") or {}}
            session.pending_approval = approval
            session.add_message("system", f"Approval needed for {approval['tool']}.")
            await self._publish(EventType.SESSION_APPROVAL_NEEDED, approval)
        elif event.kind == BridgeEventKind.ERROR:
            self.metrics_collector.record_error(session.id)
            await self._publish(
                EventType.SESSION_ERROR,
                {
                    "message": event.data.get("message", ""),
                    "phase": event.data.get("phase", "runtime"),
                },
            )

    # -----------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------

    async def _transition(self, target: SessionStatus) -> None:
        session = self._session
        if session is None:
            raise InvalidTransitionError(SessionStatus.IDLE.value, target.value)
        previous = session.status
        if target not in TRANSITIONS[previous]:
            raise InvalidTransitionError(previous.value, target.value)

        session.status = target
        logger.info(
            "session_state_change",
            session_id=session.id,
            previous=previous.value,
            current=target.value,
        )
        if target in METERED_STATUSES:
            self._start_metrics_loop(session.id)
        else:
            await self._stop_metrics_loop()
        await self._publish(
            EventType.SESSION_STATE_CHANGE,
            {"previous": previous.value, "current": target.value},
        )

    async def _finish(
        self,
        session: Session,
        target: SessionStatus,
        exit_code: int,
        success: bool,
    ) -> None:
        session.completed_at = time.time()
        session.exit_code = exit_code
        session.pending_approval = None
        self.metrics_collector.finish(session.id, exit_code=exit_code)
        await self._transition(target)
        await self._publish_metrics(session.id)
        if target == SessionStatus.COMPLETED and success:
            await self._record_cost(session)
        await self._persist_session(session)

    # -----------------------------------------------------------------
    # Metrics, cost and persistence
    # -----------------------------------------------------------------

    def _start_metrics_loop(self, session_id: str) -> None:
        if self._metrics_task is not None and not self._metrics_task.done():
            return

        async def _loop() -> None:
            interval = self.settings.metrics_interval_seconds
            logger.debug("metrics_loop_started", session_id=session_id, interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self._publish_metrics(session_id)
                except asyncio.CancelledError:
                    logger.debug("metrics_loop_stopped", session_id=session_id)
                    raise
                except Exception as e:
                    logger.error("metrics_loop_error", session_id=session_id, error=str(e))

        self._metrics_task = asyncio.create_task(_loop(), name=f"session_metrics_{session_id}")

    async def _stop_metrics_loop(self) -> None:
        task, self._metrics_task = self._metrics_task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _publish_metrics(self, session_id: str) -> None:
        metrics = self.metrics_collector.snapshot(session_id)
        await self._publish(EventType.SESSION_METRICS_UPDATE, {"metrics": metrics.model_dump()})

    async def _record_cost(self, session: Session) -> None:
        """Append the session's CostRecord to the ledger (single writer)."""
        record = build_cost_record(session.id, self.bridge.get_usage())
        self._cost_records.append(record)
        if self.session_store is not None:
            try:
                await self.session_store.append_cost_record(record)
            except Exception as e:
                logger.error("cost_record_append_failed", session_id=session.id, error=str(e))
        logger.info(
            "session_cost_recorded",
            session_id=session.id,
            model=record.model,
            total_tokens=record.total_tokens,
            total_cost=record.total_cost,
        )
        await self._publish(EventType.SESSION_COST_UPDATE, {"record": record.model_dump(by_alias=True)})

    async def get_cost_records(self) -> list[CostRecord]:
        """Read the whole cost ledger."""
        if self.session_store is not None:
            return await self.session_store.read_cost_records()
        return list(self._cost_records)

    async def _persist_session(self, session: Session) -> None:
        """Save the session summary. Storage failures are logged, never raised."""
        if self.session_store is None:
            return
        try:
            await self.session_store.save_session(
                session.id,
                status=session.status.value,
                bridge=self.bridge.kind.value,
                project_name=session.project_name,
                summary=self.get_summary().model_dump(mode="json"),
                started_at=session.started_at,
            )
        except Exception as e:
            logger.error("session_persist_failed", session_id=session.id, error=str(e))

    async def _system_message(self, text: str) -> None:
        if self._session is None:
            return
        message = self._session.add_message("system", text)
        await self._publish(EventType.SESSION_MESSAGE, message)

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._session is None:
            return
        await self.event_bus.publish(
            SessionEvent(type=event_type, session_id=self._session.id, data=data)
        )

    # -----------------------------------------------------------------
    # Introspection and shutdown
    # -----------------------------------------------------------------

    def get_summary(self) -> SessionSummaryResponse:
        session = self._session
        if session is None:
            return SessionSummaryResponse(
                session_id=None,
                status=SessionStatus.IDLE,
                bridge=self.bridge.kind,
            )
        metrics = self.metrics_collector.get(session.id)
        elapsed_ms = metrics.elapsed_ms if metrics is not None else 0
        return SessionSummaryResponse(
            session_id=session.id,
            status=session.status,
            bridge=self.bridge.kind,
            project_name=session.project_name,
            hands_off=session.hands_off,
            started_at=session.started_at,
            completed_at=session.completed_at,
            elapsed=format_elapsed(elapsed_ms),
            message_count=metrics.message_count if metrics is not None else 0,
            error_count=metrics.error_count if metrics is not None else 0,
            exit_code=session.exit_code,
            transcript_length=len(session.transcript_text),
            pending_approval=session.pending_approval,
        )

    async def shutdown(self) -> None:
        """Cancel any active session and release the bridge listener."""
        logger.info("session_controller_shutdown", status=self.status.value)
        if self.is_active:
            try:
                await self.cancel_session()
            except Exception as e:
                logger.error("shutdown_cancel_failed", error=str(e))
        await self._stop_metrics_loop()
        self._unsubscribe_bridge()
        if self._session is not None:
            await self.event_bus.close_session(self._session.id)
