"""Native process transport.

NativeProcessBridge drives a long-running external coding-agent process
through a host channel. The channel owns the process mechanics and reports
four inbound event kinds (started, progress, error, complete); the bridge
correlates them with the running turn, forwards them to its listeners in
order and turns ``tool_use_permission`` payloads into approval-needed signals.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from bridges.base import BridgeEvent, BridgeEventKind, TransportBridge
from config import Settings, settings as default_settings
from errors import SpawnError
from models.schemas import (
    Availability,
    BridgeKind,
    BridgeStatus,
    CancelResult,
    ExecuteResult,
    SessionOptions,
    TokenUsage,
)

logger = structlog.get_logger(__name__)

HostEventHandler = Callable[[BridgeEvent], Awaitable[None]]


class HostChannel(Protocol):
    """The minimal host surface the native bridge needs."""

    def set_event_handler(self, handler: HostEventHandler) -> None: ...

    async def detect_availability(self) -> Availability: ...

    async def spawn(
        self,
        prompt: str,
        output_dir: str,
        model: str | None,
        hands_off: bool,
    ) -> ExecuteResult: ...

    async def cancel(self) -> CancelResult: ...

    async def acknowledge(self, approved: bool) -> None: ...


class NativeProcessBridge(TransportBridge):
    """Transport that runs turns in a native coding-agent process.

    Attributes:
        channel: Host channel that spawns and signals the process
        output_dir: Default working directory for spawned processes
        cancel_ack_timeout: Seconds to wait for ``complete`` after a cancel
    """

    kind = BridgeKind.NATIVE

    def __init__(
        self,
        channel: HostChannel,
        output_dir: str | None = None,
        cancel_ack_timeout: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        cfg = settings or default_settings
        self.channel = channel
        self.output_dir = output_dir or cfg.output_dir
        self.cancel_ack_timeout = (
            cancel_ack_timeout if cancel_ack_timeout is not None else cfg.cancel_ack_timeout_seconds
        )
        self._pid: int | None = None
        self._cancelling = False
        self._awaiting_approval = False
        self._completed = asyncio.Event()
        self.channel.set_event_handler(self._on_host_event)

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def awaiting_approval(self) -> bool:
        return self._awaiting_approval

    async def detect_availability(self) -> Availability:
        availability = await self.channel.detect_availability()
        logger.info(
            "native_bridge_detected",
            available=availability.available,
            version=availability.version,
            error=availability.error,
        )
        return availability

    async def execute(self, prompt: str, options: SessionOptions) -> ExecuteResult:
        """Spawn the agent process for one turn.

        Raises:
            AlreadyRunningError: If a process is already running.
            SpawnError: If the host channel could not start the process.
        """
        self._ensure_idle()
        self._status = BridgeStatus.STARTING
        self._session_id = None
        self._pid = None
        self._cancelling = False
        self._awaiting_approval = False
        self._completed = asyncio.Event()
        self._usage = TokenUsage(model=options.model or "")

        output_dir = options.output_dir or self.output_dir
        logger.info(
            "native_spawn_start",
            output_dir=output_dir,
            model=options.model,
            hands_off=options.hands_off,
            prompt_length=len(prompt),
        )
        try:
            result = await self.channel.spawn(prompt, output_dir, options.model, options.hands_off)
        except SpawnError:
            self._status = BridgeStatus.FAILED
            raise
        except Exception as e:
            self._status = BridgeStatus.FAILED
            logger.error("native_spawn_failed", error=str(e), error_type=type(e).__name__)
            raise SpawnError(f"Failed to start native agent process: {e}") from e

        self._session_id = result.session_id
        self._pid = result.pid
        # A very short process may already have completed during spawn
        if self._status == BridgeStatus.STARTING:
            self._status = BridgeStatus.RUNNING

        logger.info("native_spawn_complete", session_id=result.session_id, pid=result.pid)
        return result

    async def cancel(self) -> CancelResult:
        """Send a termination signal and wait for the process to acknowledge it.

        The turn stays active until ``complete`` arrives, so no new turn can
        start against a half torn-down process. If no acknowledgement arrives
        within ``cancel_ack_timeout`` the process is treated as reaped. A
        channel that no longer has a live process while the turn is still
        active has already lost it, so that counts as reaped too.
        """
        if not self.is_active:
            return CancelResult(cancelled=False, reason="No active session")

        self._cancelling = True
        result = await self.channel.cancel()
        if not result.cancelled:
            logger.warning(
                "native_cancel_process_gone",
                session_id=self._session_id,
                pid=self._pid,
                reason=result.reason,
            )
            result = CancelResult(cancelled=True, pid=self._pid)

        try:
            await asyncio.wait_for(self._completed.wait(), timeout=self.cancel_ack_timeout)
        except TimeoutError:
            logger.warning(
                "native_cancel_ack_timeout",
                session_id=self._session_id,
                pid=self._pid,
                timeout=self.cancel_ack_timeout,
                process_may_be_alive=True,
            )
        self._status = BridgeStatus.CANCELLED
        self._cancelling = False
        self._awaiting_approval = False
        logger.info("native_cancel_complete", session_id=self._session_id, pid=self._pid)
        return CancelResult(cancelled=True, pid=result.pid or self._pid)

    async def acknowledge_approval(self, approved: bool) -> bool:
        if not self._awaiting_approval:
            return False
        await self.channel.acknowledge(approved)
        self._awaiting_approval = False
        logger.info("native_approval_acknowledged", session_id=self._session_id, approved=approved)
        return True

    def progress_text(self, data: dict[str, Any]) -> str:
        """Text of a progress event; assistant text blocks for stream-json lines."""
        if data.get("type") != "json":
            return super().progress_text(data)
        payload = data.get("payload")
        if not isinstance(payload, dict) or payload.get("type") != "assistant":
            return ""
        content = (payload.get("message") or {}).get("content") or []
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )

    # -----------------------------------------------------------------
    # Host events
    # -----------------------------------------------------------------

    async def _on_host_event(self, event: BridgeEvent) -> None:
        if not self.is_active and not self._cancelling:
            logger.debug("native_event_ignored", kind=event.kind.value, session_id=event.session_id)
            return
        if (
            self._session_id is not None
            and event.session_id is not None
            and event.session_id != self._session_id
        ):
            logger.debug(
                "native_event_uncorrelated",
                kind=event.kind.value,
                session_id=event.session_id,
                expected=self._session_id,
            )
            return
        if self._session_id is None and event.session_id is not None:
            self._session_id = event.session_id

        if event.kind == BridgeEventKind.STARTED:
            self._pid = event.data.get("pid", self._pid)
            await self._emit(BridgeEventKind.STARTED, sessionId=event.session_id, pid=self._pid)
        elif event.kind == BridgeEventKind.PROGRESS:
            await self._handle_progress(event.data)
        elif event.kind == BridgeEventKind.ERROR:
            await self._emit(
                BridgeEventKind.ERROR,
                message=str(event.data.get("message", "")),
                phase=event.data.get("phase", "runtime"),
            )
        elif event.kind == BridgeEventKind.COMPLETE:
            await self._handle_complete(event.data)

    async def _handle_progress(self, data: dict[str, Any]) -> None:
        if self._status == BridgeStatus.STARTING:
            self._status = BridgeStatus.RUNNING
        await self._emit(BridgeEventKind.PROGRESS, type=data.get("type", "text"), payload=data.get("payload"))

        payload = data.get("payload")
        if data.get("type") != "json" or not isinstance(payload, dict):
            return
        if payload.get("type") == "tool_use_permission":
            self._awaiting_approval = True
            await self._emit(
                BridgeEventKind.APPROVAL_NEEDED,
                tool=payload.get("tool") or payload.get("tool_name"),
                input=payload.get("input") or {},
            )
        elif payload.get("type") == "result":
            self._record_usage(payload)

    def _record_usage(self, payload: dict[str, Any]) -> None:
        usage = payload.get("usage") or {}
        self._usage = TokenUsage(
            model=self._usage.model or payload.get("model", "") or "claude-sonnet-4-5",
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
            cost_usd=payload.get("total_cost_usd"),
        )

    async def _handle_complete(self, data: dict[str, Any]) -> None:
        exit_code = int(data.get("exitCode", 1))
        success = bool(data.get("success", exit_code == 0))
        if self._cancelling:
            self._status = BridgeStatus.CANCELLED
        else:
            self._status = BridgeStatus.COMPLETED if success else BridgeStatus.FAILED
        self._awaiting_approval = False
        logger.info(
            "native_process_complete",
            session_id=self._session_id,
            exit_code=exit_code,
            success=success,
        )
        await self._emit(BridgeEventKind.COMPLETE, exitCode=exit_code, success=success)
        self._completed.set()
