"""Transport bridge contract.

A bridge executes one agent turn at a time, either by driving a native
coding-agent process or by streaming a remote provider call, and reports what
happens as an ordered stream of ``BridgeEvent`` objects delivered to its
listeners. Both variants expose the same execute/cancel/status contract.
"""

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

import structlog

from errors import AlreadyRunningError, SessionCancelledError, TransportError
from models.schemas import (
    Availability,
    BridgeKind,
    BridgeStatus,
    CancelResult,
    ExecuteResult,
    SessionOptions,
    TokenUsage,
    TurnResult,
)

logger = structlog.get_logger(__name__)


class BridgeEventKind(StrEnum):
    """Inbound event kinds of a bridge turn."""

    STARTED = "started"
    PROGRESS = "progress"
    ERROR = "error"
    COMPLETE = "complete"
    APPROVAL_NEEDED = "approval-needed"


@dataclass(frozen=True)
class BridgeEvent:
    """One event of a bridge turn, correlated by transport session id.

    Payloads:
        STARTED: ``{"sessionId", "pid"}``
        PROGRESS: ``{"type": "text" | "json", "payload": str | dict}``
        ERROR: ``{"message", "phase"}``
        COMPLETE: ``{"exitCode", "success"}``
        APPROVAL_NEEDED: ``{"tool", "input"}``
    """

    kind: BridgeEventKind
    session_id: str | None
    data: dict[str, Any] = field(default_factory=dict)


BridgeListener = Callable[[BridgeEvent], Awaitable[None]]

ACTIVE_BRIDGE_STATUSES = frozenset({BridgeStatus.STARTING, BridgeStatus.RUNNING})


class TransportBridge(ABC):
    """Base class of the native and remote transports.

    Subclasses implement ``detect_availability``, ``execute`` and ``cancel``
    and report progress through ``_emit``. Listeners registered with
    ``add_listener`` receive every event in emission order.
    """

    kind: ClassVar[BridgeKind]

    def __init__(self) -> None:
        self._listeners: list[BridgeListener] = []
        self._status = BridgeStatus.IDLE
        self._session_id: str | None = None
        self._usage = TokenUsage()

    # -----------------------------------------------------------------
    # Listeners
    # -----------------------------------------------------------------

    def add_listener(self, listener: BridgeListener) -> Callable[[], None]:
        """Register a listener; returns a handle that removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, kind: BridgeEventKind, **data: Any) -> None:
        event = BridgeEvent(kind=kind, session_id=self._session_id, data=data)
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                # One misbehaving observer must not stop the stream for the others
                logger.exception(
                    "bridge_listener_failed",
                    bridge=self.kind.value,
                    event_kind=kind.value,
                )

    # -----------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------

    def get_status(self) -> BridgeStatus:
        return self._status

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_active(self) -> bool:
        return self._status in ACTIVE_BRIDGE_STATUSES

    def get_usage(self) -> TokenUsage:
        """Token usage reported for the current or last turn."""
        return self._usage

    def _ensure_idle(self) -> None:
        if self.is_active:
            raise AlreadyRunningError(
                f"{self.kind.value} bridge already has a turn in flight",
                session_id=self._session_id,
            )

    # -----------------------------------------------------------------
    # Contract
    # -----------------------------------------------------------------

    @abstractmethod
    async def detect_availability(self) -> Availability:
        """Probe whether this transport can run a turn right now."""

    @abstractmethod
    async def execute(self, prompt: str, options: SessionOptions) -> ExecuteResult:
        """Start a turn. Returns once the turn is running; events follow.

        Raises:
            AlreadyRunningError: If a turn is already in flight.
            TransportError: If the turn could not be started.
        """

    @abstractmethod
    async def cancel(self) -> CancelResult:
        """Request cancellation and wait for the transport to acknowledge it."""

    async def acknowledge_approval(self, approved: bool) -> bool:
        """Answer an approval-needed signal. Returns False if none is pending."""
        return False

    def progress_text(self, data: dict[str, Any]) -> str:
        """Text contributed to the transcript by a progress event."""
        if data.get("type") == "text":
            return str(data.get("payload", ""))
        return ""

    # -----------------------------------------------------------------
    # Whole turns
    # -----------------------------------------------------------------

    async def run_turn(
        self,
        prompt: str,
        options: SessionOptions | None = None,
        timeout: float | None = None,
    ) -> TurnResult:
        """Execute one turn and wait for it to complete.

        Used by callers that need the whole answer (the planner, the execution
        coordinator) rather than the live stream.

        Raises:
            AlreadyRunningError: If a turn is already in flight.
            TransportError: If the turn could not start or timed out.
            SessionCancelledError: If the turn was cancelled.
        """
        loop = asyncio.get_running_loop()
        finished: asyncio.Future[BridgeEvent] = loop.create_future()
        chunks: list[str] = []

        async def collect(event: BridgeEvent) -> None:
            if event.kind == BridgeEventKind.PROGRESS:
                text = self.progress_text(event.data)
                if text:
                    chunks.append(text)
            elif event.kind == BridgeEventKind.COMPLETE and not finished.done():
                finished.set_result(event)

        # Guard before registering so a rejected call never sees another turn's events
        self._ensure_idle()
        unsubscribe = self.add_listener(collect)
        try:
            await self.execute(prompt, options or SessionOptions(prompt=prompt))
            try:
                complete = await asyncio.wait_for(finished, timeout=timeout)
            except TimeoutError as e:
                await self.cancel()
                raise TransportError(
                    f"{self.kind.value} turn timed out after {timeout}s",
                    timeout=timeout,
                ) from e
        finally:
            unsubscribe()

        if self._status == BridgeStatus.CANCELLED:
            raise SessionCancelledError("Turn was cancelled", session_id=self._session_id)

        return TurnResult(
            text="".join(chunks),
            exit_code=int(complete.data.get("exitCode", 1)),
            success=bool(complete.data.get("success", False)),
            usage=self._usage,
        )
