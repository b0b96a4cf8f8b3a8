"""In-memory metrics and cost accounting for active sessions.

This module provides:
- MetricsCollector: message/error counters and elapsed time per session,
  reported by the controller's periodic metrics update
- CostTracker: per-agent and per-tier spend of an execution run, with budget
  alerts at 80% and 100%

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.start("sess_abc123", prompt_length=420)
    >>> collector.record_message("sess_abc123")
    >>> snapshot = collector.snapshot("sess_abc123")
    >>> final = collector.finish("sess_abc123", exit_code=0)
"""

import time
from dataclasses import dataclass, field

import structlog

from agents.utils import format_elapsed
from events.types import SessionMetrics
from models.schemas import CostRecord

logger = structlog.get_logger(__name__)

WARNING_THRESHOLD = 0.8


@dataclass
class SessionMetricsData:
    """Accumulated metrics for a single session.

    Attributes:
        message_count: Progress chunks received while the session was live.
        error_count: Runtime error events received.
        prompt_length: Length of the prompt handed to the bridge.
        node_count / connection_count: Size of the graph payload, if any.
        exit_code: Process exit code (set by finish()).
        started_at: Unix timestamp when tracking began.
        completed_at: Unix timestamp when tracking finished.
    """

    message_count: int = 0
    error_count: int = 0
    prompt_length: int = 0
    node_count: int = 0
    connection_count: int = 0
    exit_code: int | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def elapsed_ms(self) -> int:
        end = self.completed_at if self.completed_at is not None else time.time()
        return max(0, int((end - self.started_at) * 1000))

    def to_model(self) -> SessionMetrics:
        return SessionMetrics(
            message_count=self.message_count,
            error_count=self.error_count,
            elapsed_ms=self.elapsed_ms,
            elapsed=format_elapsed(self.elapsed_ms),
            prompt_length=self.prompt_length,
            node_count=self.node_count,
            connection_count=self.connection_count,
            exit_code=self.exit_code,
        )


class MetricsCollector:
    """In-memory collector that tracks per-session counters.

    Attributes:
        _sessions: Mapping from session_id to its metrics data.
    """

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._sessions: dict[str, SessionMetricsData] = {}
        logger.info("metrics_collector_initialized")

    def start(
        self,
        session_id: str,
        prompt_length: int = 0,
        node_count: int = 0,
        connection_count: int = 0,
    ) -> None:
        """Begin tracking metrics for a session. No-op if already tracked."""
        if session_id in self._sessions:
            logger.debug("metrics_already_tracking", session_id=session_id)
            return

        self._sessions[session_id] = SessionMetricsData(
            prompt_length=prompt_length,
            node_count=node_count,
            connection_count=connection_count,
        )
        logger.debug("metrics_tracking_started", session_id=session_id)

    def record_message(self, session_id: str) -> None:
        data = self._sessions.get(session_id)
        if data is None:
            logger.warning("metrics_record_no_session", session_id=session_id)
            return
        data.message_count += 1

    def record_error(self, session_id: str) -> None:
        data = self._sessions.get(session_id)
        if data is None:
            logger.warning("metrics_error_no_session", session_id=session_id)
            return
        data.error_count += 1

    def snapshot(self, session_id: str) -> SessionMetrics:
        """Current metrics of a session (zeros if it is not tracked)."""
        data = self._sessions.get(session_id)
        return data.to_model() if data is not None else SessionMetrics()

    def finish(self, session_id: str, exit_code: int | None = None) -> SessionMetricsData | None:
        """Stop the clock for a session.

        The data stays available through ``get`` until ``discard`` so that
        summaries of a finished session keep their final numbers.

        Args:
            session_id: The session to finalize.
            exit_code: Process exit code, if known.

        Returns:
            The final SessionMetricsData, or None if not tracked.
        """
        data = self._sessions.get(session_id)
        if data is None:
            logger.warning("metrics_finish_no_session", session_id=session_id)
            return None
        if data.completed_at is None:
            data.completed_at = time.time()
        if exit_code is not None:
            data.exit_code = exit_code

        logger.info(
            "metrics_session_finished",
            session_id=session_id,
            message_count=data.message_count,
            error_count=data.error_count,
            elapsed_ms=data.elapsed_ms,
            exit_code=data.exit_code,
        )
        return data

    def get(self, session_id: str) -> SessionMetricsData | None:
        return self._sessions.get(session_id)

    def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)


# =============================================================================
# Cost accounting
# =============================================================================


@dataclass
class BudgetAlert:
    scope: str
    key: str
    level: str
    spent: float
    budget: float


@dataclass
class _Spend:
    cost: float = 0.0
    tokens: int = 0
    calls: int = 0


class CostTracker:
    """Spend of one execution run, by agent and by tier.

    Alerts fire once per (scope, key, level): ``warning`` at 80% of a budget,
    ``exceeded`` at 100%.
    """

    def __init__(
        self,
        session_budget: float,
        agent_budget: float,
        tier_budgets: dict[str, float],
    ) -> None:
        self.session_budget = session_budget
        self.agent_budget = agent_budget
        self.tier_budgets = tier_budgets
        self.total = _Spend()
        self.by_agent: dict[str, _Spend] = {}
        self.by_tier: dict[str, _Spend] = {}
        self._fired: set[tuple[str, str, str]] = set()

    def record(self, agent_id: str, tier: str, record: CostRecord) -> list[BudgetAlert]:
        """Add one turn's cost and return the alerts it triggered."""
        for spend in (
            self.total,
            self.by_agent.setdefault(agent_id, _Spend()),
            self.by_tier.setdefault(tier, _Spend()),
        ):
            spend.cost += record.total_cost
            spend.tokens += record.total_tokens
            spend.calls += 1

        alerts: list[BudgetAlert] = []
        checks = [
            ("session", "session", self.total.cost, self.session_budget),
            ("agent", agent_id, self.by_agent[agent_id].cost, self.agent_budget),
        ]
        if tier in self.tier_budgets:
            checks.append(("tier", tier, self.by_tier[tier].cost, self.tier_budgets[tier]))

        for scope, key, spent, budget in checks:
            if budget <= 0:
                continue
            ratio = spent / budget
            level = "exceeded" if ratio >= 1.0 else "warning" if ratio >= WARNING_THRESHOLD else None
            if level is None or (scope, key, level) in self._fired:
                continue
            self._fired.add((scope, key, level))
            alerts.append(BudgetAlert(scope=scope, key=key, level=level, spent=spent, budget=budget))
            logger.warning("budget_alert", scope=scope, key=key, level=level, spent=spent, budget=budget)
        return alerts

    def report(self) -> dict[str, object]:
        return {
            "totalCost": round(self.total.cost, 6),
            "totalTokens": self.total.tokens,
            "calls": self.total.calls,
            "byAgent": {k: round(v.cost, 6) for k, v in self.by_agent.items()},
            "byTier": {k: round(v.cost, 6) for k, v in self.by_tier.items()},
        }
