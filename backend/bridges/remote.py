"""Remote API transport.

RemoteAPIBridge issues one authenticated streaming completion per turn through
LiteLLM and forwards the response chunks as text progress events. There is no
process to reap: a turn ends when the stream ends or is aborted.
"""

import asyncio
import contextlib
import time
import uuid
from typing import Any

import structlog
from litellm import acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from agents.utils import backoff_delay
from bridges.base import BridgeEventKind, TransportBridge
from config import Settings, settings as default_settings
from errors import NetworkError
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

SYSTEM_PROMPT = (
    "You are a senior software engineer executing a project plan. "
    "Work through the request step by step and report your progress."
)

# Providers in detection order
PROVIDERS = ("anthropic", "openai")


class RemoteAPIBridge(TransportBridge):
    """Transport that streams turns from a remote LLM provider.

    Attributes:
        api_keys: Provider name to API key (empty keys are ignored)
        default_models: Provider name to model used when a turn names none
        max_tokens: Output token ceiling per turn
        timeout: Request timeout in seconds
        retry_attempts: Retries when opening the stream hits a transient error
    """

    kind = BridgeKind.REMOTE

    def __init__(
        self,
        api_keys: dict[str, str] | None = None,
        default_models: dict[str, str] | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        retry_attempts: int = 2,
        retry_delay: float = 1.0,
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        cfg = settings or default_settings
        self.api_keys = (
            api_keys
            if api_keys is not None
            else {"anthropic": cfg.anthropic_api_key, "openai": cfg.openai_api_key}
        )
        self.default_models = default_models or {
            "anthropic": cfg.anthropic_default_model,
            "openai": cfg.openai_default_model,
        }
        self.max_tokens = max_tokens or cfg.remote_max_tokens
        self.timeout = timeout or cfg.request_timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._task: asyncio.Task[None] | None = None

    def detect_provider(self) -> str | None:
        """First provider with a configured key, anthropic before openai."""
        return next((name for name in PROVIDERS if self.api_keys.get(name)), None)

    def has_any_api_key(self) -> bool:
        return self.detect_provider() is not None

    async def detect_availability(self) -> Availability:
        provider = self.detect_provider()
        if provider is None:
            return Availability(available=False, error="No API key configured for any provider")
        return Availability(available=True, version=provider)

    def _resolve_model(self, provider: str, requested: str | None) -> str:
        model = requested or self.default_models[provider]
        if "/" not in model:
            model = f"{provider}/{model}"
        return model

    async def execute(self, prompt: str, options: SessionOptions) -> ExecuteResult:
        """Open the streaming call and start forwarding chunks.

        Raises:
            AlreadyRunningError: If a turn is already in flight.
            NetworkError: If no key is configured or the call cannot be opened.
        """
        self._ensure_idle()
        provider = self.detect_provider()
        if provider is None:
            raise NetworkError("No API key configured for any remote provider")

        model = self._resolve_model(provider, options.model)
        self._status = BridgeStatus.STARTING
        self._session_id = f"remote-{int(time.time() * 1000):x}-{uuid.uuid4().hex[:6]}"
        self._usage = TokenUsage(model=model)

        logger.info(
            "remote_turn_start",
            session_id=self._session_id,
            provider=provider,
            model=model,
            prompt_length=len(prompt),
        )
        try:
            stream = await self._open_stream(provider, model, prompt)
        except NetworkError:
            self._status = BridgeStatus.FAILED
            raise

        self._status = BridgeStatus.RUNNING
        self._task = asyncio.create_task(self._consume(stream))
        await self._emit(BridgeEventKind.STARTED, sessionId=self._session_id, pid=None)
        return ExecuteResult(session_id=self._session_id, pid=None)

    async def _open_stream(self, provider: str, model: str, prompt: str) -> Any:
        """Open the completion stream, retrying transient provider errors."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
            "api_key": self.api_keys[provider],
        }

        for attempt in range(self.retry_attempts + 1):
            try:
                return await acompletion(**kwargs)
            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                if attempt >= self.retry_attempts:
                    logger.error(
                        "remote_open_failed_all_retries",
                        model=model,
                        attempts=attempt + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise NetworkError(f"{provider} request failed: {e}", provider=provider) from e
                delay = backoff_delay(attempt, self.retry_delay)
                logger.warning(
                    "remote_open_retry",
                    model=model,
                    attempt=attempt + 1,
                    error_type=type(e).__name__,
                    retry_delay=delay,
                )
                await asyncio.sleep(delay)
            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "remote_open_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise NetworkError(f"{provider} rejected the request: {e}", provider=provider) from e
            except Exception as e:
                logger.error("remote_open_failed", model=model, error_type=type(e).__name__, error=str(e))
                raise NetworkError(f"{provider} request failed: {e}", provider=provider) from e

        raise NetworkError(f"{provider} request failed", provider=provider)

    async def _consume(self, stream: Any) -> None:
        try:
            async for chunk in stream:
                text = _chunk_text(chunk)
                if text:
                    await self._emit(BridgeEventKind.PROGRESS, type="text", payload=text)
                self._record_usage(chunk)
        except asyncio.CancelledError:
            self._status = BridgeStatus.CANCELLED
            logger.info("remote_turn_aborted", session_id=self._session_id)
            await self._emit(BridgeEventKind.COMPLETE, exitCode=-1, success=False)
            raise
        except Exception as e:
            self._status = BridgeStatus.FAILED
            logger.error(
                "remote_stream_failed",
                session_id=self._session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._emit(BridgeEventKind.ERROR, message=str(e), phase="runtime")
            await self._emit(BridgeEventKind.COMPLETE, exitCode=1, success=False)
            return

        self._status = BridgeStatus.COMPLETED
        logger.info(
            "remote_turn_complete",
            session_id=self._session_id,
            input_tokens=self._usage.input_tokens,
            output_tokens=self._usage.output_tokens,
        )
        await self._emit(BridgeEventKind.COMPLETE, exitCode=0, success=True)

    def _record_usage(self, chunk: Any) -> None:
        usage = getattr(chunk, "usage", None)
        if not usage:
            return
        input_tokens = getattr(usage, "prompt_tokens", None) or 0
        output_tokens = getattr(usage, "completion_tokens", None) or 0
        if input_tokens or output_tokens:
            self._usage = TokenUsage(
                model=self._usage.model,
                input_tokens=int(input_tokens),
                output_tokens=int(output_tokens),
            )

    async def cancel(self) -> CancelResult:
        """Abort the in-flight stream and wait for the abort to finish."""
        task = self._task
        if not self.is_active or task is None:
            return CancelResult(cancelled=False, reason="No active session")

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._status = BridgeStatus.CANCELLED
        logger.info("remote_cancel_complete", session_id=self._session_id)
        return CancelResult(cancelled=True)


def _chunk_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""
