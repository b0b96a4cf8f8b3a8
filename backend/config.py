"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Conductor
orchestration backend. All settings can be overridden via environment variables
or a .env file.
"""

import json
import logging
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        bridge_mode: Which transport to use. "auto" picks the native process
            bridge when the coding-agent CLI is installed, else the remote API.
        claude_cli_path: Executable used by the native host channel.
        output_dir: Working directory handed to the native agent process.
        native_allowed_tools: Tools pre-approved for the native agent in
            hands-off mode.
        anthropic_api_key: API key for the Anthropic provider (remote bridge).
        openai_api_key: API key for the OpenAI provider (remote bridge).
        anthropic_default_model: Model used by the remote bridge for Anthropic.
        openai_default_model: Model used by the remote bridge for OpenAI.
        remote_max_tokens: Output token ceiling for a remote turn.
        flash_model / standard_model / opus_model: Model per capability tier.
        request_timeout_seconds: Timeout for a remote streaming call.
        cancel_ack_timeout_seconds: How long cancel waits for the native
            process to acknowledge termination.
        process_kill_grace_seconds: Grace period between SIGTERM and SIGKILL.
        planner_max_retries: Retries of a planning turn on transport errors
            before the coordinator falls back to the local plan.
        planner_backoff_seconds: Initial backoff between planner retries.
        metrics_interval_seconds: Period of session metrics updates.
        session_budget_usd / agent_budget_usd: Cost alert thresholds.
        database_path: SQLite file for the cost ledger and session history.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Transport selection
    bridge_mode: Literal["auto", "native", "remote"] = "auto"

    # Native process bridge
    claude_cli_path: str = "claude"
    output_dir: str = "./output"
    native_allowed_tools: str = "Bash,Read,Write,Edit,MultiEdit,Glob,Grep,LS,TodoRead,TodoWrite"

    # Remote API bridge
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    # Model names are passed straight to LiteLLM (provider prefix optional)
    anthropic_default_model: str = "anthropic/claude-sonnet-4-5"
    openai_default_model: str = "openai/gpt-4o"
    remote_max_tokens: int = 16384

    # Model tiers (cheap / standard / high-capability)
    flash_model: str = "anthropic/claude-haiku-4-5"
    standard_model: str = "anthropic/claude-sonnet-4-5"
    opus_model: str = "anthropic/claude-opus-4-6"

    # Timeouts
    request_timeout_seconds: int = 120
    cancel_ack_timeout_seconds: float = 10.0
    process_kill_grace_seconds: float = 5.0

    # Planner retry before local fallback
    planner_max_retries: int = 2
    planner_backoff_seconds: float = 0.5

    # Session observability
    metrics_interval_seconds: float = 1.0

    # Cost budgets (USD)
    session_budget_usd: float = 5.0
    agent_budget_usd: float = 1.5
    flash_budget_usd: float = 0.5
    standard_budget_usd: float = 3.0
    opus_budget_usd: float = 5.0

    # Database Configuration
    database_path: str = "./data/conductor.db"

    # Server Configuration
    backend_port: int = 8000
    frontend_port: int = 3000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from a JSON array, a comma-separated string or a list."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_for_tier(self, tier: str) -> str:
        """Return the configured model for a capability tier (standard if unknown)."""
        return {
            "flash": self.flash_model,
            "standard": self.standard_model,
            "opus": self.opus_model,
        }.get(tier, self.standard_model)

    def tier_budget(self, tier: str) -> float:
        """Return the cost budget for a capability tier."""
        return {
            "flash": self.flash_budget_usd,
            "standard": self.standard_budget_usd,
            "opus": self.opus_budget_usd,
        }.get(tier, self.standard_budget_usd)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)
