"""Subprocess host channel for the native bridge.

Runs the ``claude`` coding-agent CLI in print mode with stream-json output and
turns its output into host events:

- stdout lines that decode as JSON become ``json`` progress, others ``text``
- stderr lines become runtime ``error`` events
- process exit becomes ``complete{exitCode, success}``

Session ids are ``session_<pid>``.
"""

import asyncio
import contextlib
import json
import shutil
from collections.abc import AsyncIterator
from pathlib import Path

import structlog

from bridges.base import BridgeEvent, BridgeEventKind
from bridges.native import HostEventHandler
from config import Settings, settings as default_settings
from errors import SpawnError
from models.schemas import Availability, CancelResult, ExecuteResult

logger = structlog.get_logger(__name__)

# stream-json lines can be far longer than asyncio's 64 KiB default
STREAM_LIMIT_BYTES = 16 * 1024 * 1024
VERSION_TIMEOUT_SECONDS = 10.0


class SubprocessHostChannel:
    """Host channel backed by ``asyncio.create_subprocess_exec``.

    Attributes:
        cli_path: Executable name or path of the agent CLI
        allowed_tools: Comma-separated tools pre-approved in hands-off mode
        kill_grace_seconds: Delay between SIGTERM and SIGKILL on cancel
        stream_limit: Line buffer size of the stdout and stderr readers
    """

    def __init__(
        self,
        cli_path: str | None = None,
        allowed_tools: str | None = None,
        kill_grace_seconds: float | None = None,
        settings: Settings | None = None,
        stream_limit: int = STREAM_LIMIT_BYTES,
    ) -> None:
        cfg = settings or default_settings
        self.cli_path = cli_path or cfg.claude_cli_path
        self.allowed_tools = allowed_tools if allowed_tools is not None else cfg.native_allowed_tools
        self.kill_grace_seconds = (
            kill_grace_seconds if kill_grace_seconds is not None else cfg.process_kill_grace_seconds
        )
        self.stream_limit = stream_limit
        self._handler: HostEventHandler | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._session_id: str | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    def set_event_handler(self, handler: HostEventHandler) -> None:
        self._handler = handler

    async def _dispatch(self, kind: BridgeEventKind, **data: object) -> None:
        if self._handler is not None:
            await self._handler(BridgeEvent(kind=kind, session_id=self._session_id, data=data))

    async def detect_availability(self) -> Availability:
        """Run ``<cli> --version`` and report whether the CLI is usable."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.cli_path,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=VERSION_TIMEOUT_SECONDS
            )
        except FileNotFoundError:
            return Availability(available=False, error=f"'{self.cli_path}' not found on PATH")
        except (OSError, TimeoutError) as e:
            return Availability(available=False, error=f"Failed to run '{self.cli_path}': {e}")

        if process.returncode != 0:
            return Availability(
                available=False,
                error=stderr.decode(errors="replace").strip() or f"exit code {process.returncode}",
            )
        return Availability(
            available=True,
            version=stdout.decode(errors="replace").strip(),
            path=shutil.which(self.cli_path) or self.cli_path,
        )

    def build_command(self, prompt: str, model: str | None, hands_off: bool) -> list[str]:
        args = [self.cli_path, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if model:
            args += ["--model", model]
        if hands_off and self.allowed_tools:
            args += ["--allowedTools", self.allowed_tools]
        return args

    async def spawn(
        self,
        prompt: str,
        output_dir: str,
        model: str | None,
        hands_off: bool,
    ) -> ExecuteResult:
        """Start the CLI in ``output_dir`` and begin pumping its output.

        Raises:
            SpawnError: If a process is already running or still being reaped,
                or the CLI cannot start.
        """
        if self._process is not None and self._process.returncode is None:
            raise SpawnError("A native agent process is already running", pid=self._process.pid)
        if self._supervisor is not None and not self._supervisor.done():
            raise SpawnError("The previous native agent process is still being reaped")

        workdir = Path(output_dir)
        workdir.mkdir(parents=True, exist_ok=True)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(prompt, model, hands_off),
                cwd=str(workdir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.stream_limit,
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn '{self.cli_path}': {e}") from e

        self._process = process
        self._session_id = f"session_{process.pid}"
        logger.info("host_process_spawned", session_id=self._session_id, pid=process.pid)

        await self._dispatch(BridgeEventKind.STARTED, sessionId=self._session_id, pid=process.pid)
        self._supervisor = asyncio.create_task(self._supervise(process))
        self._track(self._supervisor)
        return ExecuteResult(session_id=self._session_id, pid=process.pid)

    async def cancel(self) -> CancelResult:
        """SIGTERM the running process, escalating to SIGKILL after the grace period."""
        process = self._process
        if process is None or process.returncode is not None:
            return CancelResult(cancelled=False, reason="No active native agent process")

        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        self._track(asyncio.create_task(self._kill_after_grace(process)))
        logger.info("host_process_terminated", session_id=self._session_id, pid=process.pid)
        return CancelResult(cancelled=True, pid=process.pid)

    async def acknowledge(self, approved: bool) -> None:
        """Answer a tool permission request on the process's stdin."""
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            logger.warning("host_acknowledge_no_process", approved=approved)
            return
        line = json.dumps({"type": "tool_use_permission_response", "approved": approved})
        process.stdin.write(line.encode() + b"\n")
        await process.stdin.drain()

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    def _track(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _supervise(self, process: asyncio.subprocess.Process) -> None:
        """Pump both streams, then report exit. ``complete`` is always sent."""
        pumps = []
        if process.stdout is not None:
            pumps.append(self._pump(process.stdout, is_stderr=False))
        if process.stderr is not None:
            pumps.append(self._pump(process.stderr, is_stderr=True))

        read_failed = False
        exit_code = -1
        try:
            for result in await asyncio.gather(*pumps, return_exceptions=True):
                if not isinstance(result, Exception):
                    continue
                read_failed = True
                logger.error(
                    "host_stream_read_failed",
                    session_id=self._session_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                await self._dispatch(
                    BridgeEventKind.ERROR,
                    message=f"Failed to read agent output: {result}",
                    phase="runtime",
                )
            if read_failed and process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            exit_code = await process.wait()
        finally:
            if process.returncode is not None:
                exit_code = process.returncode
            logger.info("host_process_exited", session_id=self._session_id, exit_code=exit_code)
            await self._dispatch(
                BridgeEventKind.COMPLETE,
                exitCode=exit_code,
                success=exit_code == 0 and not read_failed,
            )

    async def _pump(self, stream: asyncio.StreamReader, is_stderr: bool) -> None:
        async for raw in _read_lines(stream):
            line = raw.decode(errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            if is_stderr:
                await self._dispatch(BridgeEventKind.ERROR, message=line, phase="runtime")
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                await self._dispatch(BridgeEventKind.PROGRESS, type="text", payload=line)
            else:
                await self._dispatch(BridgeEventKind.PROGRESS, type="json", payload=payload)

    async def _kill_after_grace(self, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            logger.warning("host_process_kill", pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines of any length.

    Lines longer than the reader's limit are drained in limit-sized pieces
    and joined, instead of failing the whole stream.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
        except asyncio.LimitOverrunError as e:
            chunks.append(await stream.readexactly(e.consumed))
            continue
        except asyncio.IncompleteReadError as e:
            chunks.append(e.partial)
            tail = b"".join(chunks)
            if tail:
                yield tail
            return
        yield b"".join(chunks)
        chunks = []
