"""Planner agent: turns project context into an execution Plan.

Two ways to get a plan:

- ``PlannerAgent.execute`` runs one planning turn through the active
  TransportBridge and strictly parses the answer. Anything that is not a
  well-formed plan raises ``ParseError``.
- ``create_local_plan`` is a pure, deterministic heuristic that buckets context
  items by priority into fixed phases. It needs no network and is what the
  execution coordinator falls back to.
"""

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from agents.prompts import get_planning_prompt
from agents.registry import AgentRegistry, get_agent_registry
from agents.utils import backoff_delay, extract_json_from_response
from bridges.base import TransportBridge
from config import Settings, settings as default_settings
from errors import ParseError, TransportError
from models.schemas import (
    ContextItem,
    Milestone,
    ModelTier,
    Phase,
    Plan,
    Priority,
    ProjectContext,
    SessionOptions,
    Task,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Strict parsing
# =============================================================================


def parse_plan(response: str) -> Plan:
    """Parse planner output into a Plan.

    Args:
        response: Raw text of the planning turn.

    Returns:
        The validated Plan.

    Raises:
        ParseError: If no JSON object is found, the shape does not match, or
            the plan has no tasks at all.
    """
    payload = extract_json_from_response(response)
    if payload is None:
        raise ParseError("Planner response contained no JSON object", preview=response[:200])

    try:
        plan = Plan.model_validate(payload)
    except PydanticValidationError as e:
        raise ParseError(
            f"Planner response is not a valid plan: {e.error_count()} validation error(s)",
            errors=[
                {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                for err in e.errors()
            ],
        ) from e

    if plan.task_count == 0:
        raise ParseError("Planner response contains no tasks")
    return plan


# =============================================================================
# Local plan
# =============================================================================

UI_KEYWORDS = ("ui", "page", "screen", "view", "layout", "component", "frontend", "dashboard", "form", "style", "theme")
INFRA_KEYWORDS = ("deploy", "ci", "cd", "docker", "infra", "pipeline", "hosting", "monitoring", "kubernetes")

SETUP_TASKS = (
    ("Initialize project structure and dependencies", "devops"),
    ("Set up development environment and tooling", "devops"),
    ("Create initial documentation scaffold", "documenter"),
)
QA_TASKS = (
    ("Devil's advocate full review pass", "devils-advocate"),
    ("Security audit of auth flows and data access", "sentinel"),
    ("Performance review and optimization", "qa-tester"),
    ("Final documentation and README update", "documenter"),
)

# (name, tier, rationale, priority bucket)
FEATURE_PHASES: tuple[tuple[str, ModelTier, str, Priority], ...] = (
    (
        "Core Architecture",
        ModelTier.OPUS,
        "Critical architecture decisions and foundational code require deep reasoning.",
        Priority.CRITICAL,
    ),
    (
        "Primary Features",
        ModelTier.STANDARD,
        "Well-defined feature implementation with clear requirements and standard patterns.",
        Priority.HIGH,
    ),
    (
        "Secondary Features",
        ModelTier.STANDARD,
        "Standard implementation work with clear specs.",
        Priority.MEDIUM,
    ),
    (
        "Enhancement & Polish",
        ModelTier.FLASH,
        "Polish tasks are mostly mechanical: formatting, minor tweaks, cleanup.",
        Priority.LOW,
    ),
)
SETUP_PHASE = (
    "Setup",
    ModelTier.FLASH,
    "Setup tasks are mechanical: scaffolding, config copying, dependency installation.",
)
QA_PHASE = (
    "QA, Security & Documentation",
    ModelTier.OPUS,
    "Security audits, threat modeling and final review demand the highest reasoning capability.",
)


def _words(text: str) -> set[str]:
    return {word.strip(".,;:!?()[]'\"").lower() for word in text.split()}


def _route_item(item: ContextItem, registry: AgentRegistry) -> str:
    if item.assigned_agent:
        entry = registry.get(item.assigned_agent)
        if entry is not None and not entry.is_human:
            return entry.id
    words = _words(item.text)
    if words.intersection(UI_KEYWORDS):
        return "frontend"
    if words.intersection(INFRA_KEYWORDS):
        return "devops"
    return "backend"


def _phase(name: str, tier: ModelTier, rationale: str, tasks: list[Task]) -> Phase:
    return Phase(
        name=name,
        routing_tier=tier,
        rationale=rationale,
        milestones=[Milestone(title=name, tasks=tasks)],
    )


def _fixed_task(title: str, agent_id: str, phase: str, tier: ModelTier, priority: Priority) -> Task:
    return Task(
        title=title,
        assigned_to=agent_id,
        tier=tier,
        priority=priority,
        phase=phase,
        requires_confirmation=tier == ModelTier.OPUS,
    )


def create_local_plan(
    context: ProjectContext,
    meta: Mapping[str, Any] | None = None,
    registry: AgentRegistry | None = None,
) -> Plan:
    """Build a plan from context item priorities alone.

    Phases, in order: Setup (always), Core Architecture (critical items),
    Primary Features (high), Secondary Features (medium), Enhancement & Polish
    (low), QA, Security & Documentation (always). Feature phases with no items
    are omitted. The result depends only on the arguments.

    Args:
        context: Project context (features are bucketed, risks add a QA task).
        meta: Optional ``project_name`` override used in the summary.
        registry: Roster used to honour explicit item assignments.

    Returns:
        The deterministic Plan.
    """
    registry = registry or get_agent_registry()
    meta = meta or {}
    project_name = meta.get("project_name") or meta.get("projectName") or context.project_name

    setup_name, setup_tier, setup_rationale = SETUP_PHASE
    phases = [
        _phase(
            setup_name,
            setup_tier,
            setup_rationale,
            [_fixed_task(title, agent, setup_name, setup_tier, Priority.HIGH) for title, agent in SETUP_TASKS],
        )
    ]

    for name, tier, rationale, priority in FEATURE_PHASES:
        items = [item for item in context.features if item.priority == priority]
        if not items:
            continue
        tasks = [
            Task(
                title=item.text,
                assigned_to=_route_item(item, registry),
                tier=tier,
                priority=priority,
                phase=name,
                requires_confirmation=tier == ModelTier.OPUS,
            )
            for item in items
        ]
        phases.append(_phase(name, tier, rationale, tasks))

    qa_name, qa_tier, qa_rationale = QA_PHASE
    qa_tasks = [_fixed_task(title, agent, qa_name, qa_tier, Priority.HIGH) for title, agent in QA_TASKS]
    if context.risks:
        qa_tasks.append(
            _fixed_task(
                "Address identified risks: " + ", ".join(risk.text for risk in context.risks),
                "sentinel",
                qa_name,
                qa_tier,
                Priority.HIGH,
            )
        )
    phases.append(_phase(qa_name, qa_tier, qa_rationale, qa_tasks))

    feature_count = len(context.features)
    return Plan(
        phases=phases,
        estimated_rounds=sum(len(phase.milestones) for phase in phases),
        summary=(
            f"Local plan for {project_name}: {len(phases)} phases covering "
            f"{feature_count} feature{'s' if feature_count != 1 else ''}."
        ),
    )


# =============================================================================
# Planner agent
# =============================================================================


class PlannerAgent:
    """Produces Plans through the active transport, or locally.

    Attributes:
        bridge: Transport used for planning turns (None means local only)
        registry: Roster listed in the planning prompt
        max_retries: Retries of a planning turn on transport errors
        backoff_seconds: Initial delay between retries
        timeout: Per-turn timeout in seconds
    """

    def __init__(
        self,
        bridge: TransportBridge | None,
        registry: AgentRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        self.bridge = bridge
        self.registry = registry or get_agent_registry()
        self.max_retries = cfg.planner_max_retries
        self.backoff_seconds = cfg.planner_backoff_seconds
        self.timeout = float(cfg.request_timeout_seconds)
        self.model = cfg.model_for_tier(ModelTier.STANDARD)

    async def execute(self, context_text: str) -> Plan:
        """Run one planning turn and parse the answer.

        Transport failures are retried with exponential backoff; malformed
        output is not.

        Args:
            context_text: Serialized project context.

        Returns:
            The parsed Plan.

        Raises:
            TransportError: If every attempt failed to complete a turn.
            ParseError: If the answer is not a valid plan.
        """
        if self.bridge is None:
            raise TransportError("No transport bridge available for planning")

        prompt = get_planning_prompt(context_text, self.registry.get_all())
        last_error: TransportError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                result = await self.bridge.run_turn(
                    prompt,
                    SessionOptions(prompt=prompt, model=self.model, hands_off=True),
                    timeout=self.timeout,
                )
                if not result.success:
                    raise TransportError(
                        f"Planning turn exited with code {result.exit_code}",
                        exit_code=result.exit_code,
                    )
            except TransportError as e:
                last_error = e
                if attempt >= self.max_retries:
                    break
                delay = backoff_delay(attempt, self.backoff_seconds)
                logger.warning(
                    "planner_turn_retry",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    error=e.message,
                    retry_delay=delay,
                )
                await asyncio.sleep(delay)
                continue

            plan = parse_plan(result.text)
            logger.info(
                "planner_plan_parsed",
                phases=len(plan.phases),
                tasks=plan.task_count,
                attempt=attempt + 1,
            )
            return plan

        logger.error("planner_turn_failed_all_retries", attempts=self.max_retries + 1)
        if last_error is None:
            raise TransportError("Planning turn was never attempted", max_retries=self.max_retries)
        raise last_error

    def create_local_plan(self, context: ProjectContext, meta: Mapping[str, Any] | None = None) -> Plan:
        """Deterministic, network-free plan (see ``create_local_plan``)."""
        return create_local_plan(context, meta, self.registry)
