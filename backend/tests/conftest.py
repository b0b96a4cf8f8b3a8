"""Shared test fixtures for backend tests.

Provides a fake host channel for the native bridge, a scripted bridge for
planner/coordinator turns, a fresh EventBus and a temporary SessionStore, so
tests never start a real agent process or call a model provider.
"""

import asyncio
import sys
from types import SimpleNamespace
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from bridges.native import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from bridges.base import BridgeEvent, BridgeEventKind, TransportBridge  # noqa: E402
from bridges.native import NativeProcessBridge  # noqa: E402
from config import Settings  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import SessionEvent  # noqa: E402
from models.database import SessionStore  # noqa: E402
from models.schemas import (  # noqa: E402
    Availability,
    BridgeKind,
    BridgeStatus,
    CancelResult,
    ExecuteResult,
    GraphConnection,
    GraphNode,
    ProjectPayload,
    SessionOptions,
    TokenUsage,
)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings with fast timers and no provider keys, ignoring any .env file."""
    values: dict[str, Any] = {
        "anthropic_api_key": "",
        "openai_api_key": "",
        "metrics_interval_seconds": 0.05,
        "cancel_ack_timeout_seconds": 0.5,
        "process_kill_grace_seconds": 0.1,
        "planner_max_retries": 2,
        "planner_backoff_seconds": 0.0,
        "request_timeout_seconds": 5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Fake host channel (native bridge)
# ---------------------------------------------------------------------------


class FakeHostChannel:
    """In-memory stand-in for the CLI subprocess channel.

    Tests drive the process by calling ``emit``/``text``/``complete``. A
    cancel acknowledges with ``complete{exitCode: -1}`` unless
    ``ack_cancel`` is False.
    """

    def __init__(
        self,
        available: bool = True,
        spawn_error: Exception | None = None,
        ack_cancel: bool = True,
    ) -> None:
        self.available = available
        self.spawn_error = spawn_error
        self.ack_cancel = ack_cancel
        self.handler: Any = None
        self.pid = 4241
        self.session_id: str | None = None
        self.spawned: list[dict[str, Any]] = []
        self.cancel_calls = 0
        self.acknowledgements: list[bool] = []
        self.before_spawn_returns: list[BridgeEvent] = []
        self._tasks: set[asyncio.Task[None]] = set()

    def set_event_handler(self, handler: Any) -> None:
        self.handler = handler

    async def detect_availability(self) -> Availability:
        if self.available:
            return Availability(available=True, version="1.0.0 (Claude Code)", path="/usr/bin/claude")
        return Availability(available=False, error="claude CLI not found")

    async def spawn(
        self,
        prompt: str,
        output_dir: str,
        model: str | None,
        hands_off: bool,
    ) -> ExecuteResult:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.pid += 1
        self.session_id = f"session_{self.pid}"
        self.spawned.append(
            {"prompt": prompt, "output_dir": output_dir, "model": model, "hands_off": hands_off}
        )
        # Events the process emits before spawn() returns to the caller
        for event in self.before_spawn_returns:
            await self.handler(
                BridgeEvent(kind=event.kind, session_id=self.session_id, data=event.data)
            )
        return ExecuteResult(session_id=self.session_id, pid=self.pid)

    async def emit(self, kind: BridgeEventKind, **data: Any) -> None:
        await self.handler(BridgeEvent(kind=kind, session_id=self.session_id, data=data))

    async def text(self, text: str) -> None:
        await self.emit(BridgeEventKind.PROGRESS, type="text", payload=text)

    async def json_line(self, payload: dict[str, Any]) -> None:
        await self.emit(BridgeEventKind.PROGRESS, type="json", payload=payload)

    async def error(self, message: str) -> None:
        await self.emit(BridgeEventKind.ERROR, message=message, phase="runtime")

    async def complete(self, exit_code: int = 0) -> None:
        await self.emit(BridgeEventKind.COMPLETE, exitCode=exit_code, success=exit_code == 0)

    async def cancel(self) -> CancelResult:
        self.cancel_calls += 1
        if self.ack_cancel:
            task = asyncio.create_task(self.complete(exit_code=-1))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return CancelResult(cancelled=True, pid=self.pid)

    async def acknowledge(self, approved: bool) -> None:
        self.acknowledgements.append(approved)


@pytest.fixture()
def host_channel() -> FakeHostChannel:
    return FakeHostChannel()


@pytest.fixture()
def native_bridge(host_channel: FakeHostChannel, settings: Settings) -> NativeProcessBridge:
    return NativeProcessBridge(host_channel, output_dir="/tmp/conductor-out", settings=settings)


# ---------------------------------------------------------------------------
# LiteLLM stream stand-ins
# ---------------------------------------------------------------------------


def completion_chunk(text: str | None = None, usage: Any = None) -> SimpleNamespace:
    choices = [SimpleNamespace(delta=SimpleNamespace(content=text))] if text is not None else []
    return SimpleNamespace(choices=choices, usage=usage)


class CompletionStream:
    """Async iterator over chunks, optionally blocking before the end."""

    def __init__(self, chunks: list[Any], block: bool = False, fail: Exception | None = None) -> None:
        self._chunks = list(chunks)
        self._block = block
        self._fail = fail

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> Any:
        if self._chunks:
            await asyncio.sleep(0)
            return self._chunks.pop(0)
        if self._fail is not None:
            raise self._fail
        if self._block:
            await asyncio.Event().wait()
        raise StopAsyncIteration


# ---------------------------------------------------------------------------
# Scripted bridge (whole turns)
# ---------------------------------------------------------------------------


class ScriptedBridge(TransportBridge):
    """Bridge whose turns answer from a script.

    Each ``execute`` consumes one script entry: a string is streamed as one
    text chunk and completes successfully, a ``(text, exit_code)`` tuple
    completes with that exit code, and an exception is raised from
    ``execute`` itself. An exhausted script answers ``"ok"``. With
    ``hold=True`` turns stay running until ``release()``.
    """

    kind = BridgeKind.REMOTE

    def __init__(
        self,
        script: list[Any] | None = None,
        available: bool = True,
        hold: bool = False,
    ) -> None:
        super().__init__()
        self.script = list(script or [])
        self.available = available
        self.hold = hold
        self.prompts: list[str] = []
        self.options: list[SessionOptions] = []
        self.cancel_calls = 0
        self._release = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    def release(self) -> None:
        self._release.set()

    async def detect_availability(self) -> Availability:
        return Availability(available=self.available, error=None if self.available else "no API key")

    async def execute(self, prompt: str, options: SessionOptions) -> ExecuteResult:
        self._ensure_idle()
        entry = self.script.pop(0) if self.script else "ok"
        if isinstance(entry, Exception):
            raise entry
        text, exit_code = entry if isinstance(entry, tuple) else (entry, 0)

        self.prompts.append(prompt)
        self.options.append(options)
        self._status = BridgeStatus.RUNNING
        self._session_id = f"scripted-{len(self.prompts)}"
        self._usage = TokenUsage(
            model=options.model or "claude-sonnet-4-5",
            input_tokens=1000,
            output_tokens=500,
        )
        task = asyncio.create_task(self._play(text, exit_code))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ExecuteResult(session_id=self._session_id)

    async def _play(self, text: str, exit_code: int) -> None:
        await asyncio.sleep(0)
        if self.hold:
            await self._release.wait()
        if self._status != BridgeStatus.RUNNING:
            return
        await self._emit(BridgeEventKind.PROGRESS, type="text", payload=text)
        self._status = BridgeStatus.COMPLETED if exit_code == 0 else BridgeStatus.FAILED
        await self._emit(BridgeEventKind.COMPLETE, exitCode=exit_code, success=exit_code == 0)

    async def cancel(self) -> CancelResult:
        self.cancel_calls += 1
        if not self.is_active:
            return CancelResult(cancelled=False, reason="No active session")
        self._status = BridgeStatus.CANCELLED
        await self._emit(BridgeEventKind.COMPLETE, exitCode=-1, success=False)
        return CancelResult(cancelled=True)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest.fixture()
async def session_store(tmp_path: Any) -> SessionStore:
    store = SessionStore(str(tmp_path / "conductor.db"))
    await store.init()
    return store


# ---------------------------------------------------------------------------
# Payload factory
# ---------------------------------------------------------------------------


def make_payload(**kwargs: Any) -> ProjectPayload:
    """A small todo-app graph: root, four features of mixed priority, one risk."""
    nodes = [
        GraphNode(id="n0", text="Todo App", node_type="general", priority="high"),
        GraphNode(id="n1", text="User authentication API", node_type="feature", priority="critical"),
        GraphNode(id="n2", text="Task list page", node_type="feature", priority="high"),
        GraphNode(id="n3", text="Deploy pipeline", node_type="feature", priority="medium"),
        GraphNode(id="n4", text="Dark theme", node_type="feature", priority="low"),
        GraphNode(id="n5", text="Token leakage", node_type="risk", priority="high"),
    ]
    connections = [
        GraphConnection(source_id="n0", target_id=node.id) for node in nodes[1:]
    ]
    return ProjectPayload(nodes=nodes, connections=connections, **kwargs)


# ---------------------------------------------------------------------------
# Event Collection Helpers
# ---------------------------------------------------------------------------


def drain(subscription: Any) -> list[SessionEvent]:
    """Everything currently queued on a subscription."""
    events: list[SessionEvent] = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
