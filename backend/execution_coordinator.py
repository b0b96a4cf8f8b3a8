"""Execution coordinator: runs a Plan through the agent team.

The coordinator asks the PlannerAgent for a Plan, validates every task's
assignment against the AgentRegistry, then walks phases → milestones → tasks
strictly one at a time as a LangGraph state machine:

    START -> [next task? -> gate -> execute_task -> next task? ... | END]

- gate: waits while the run is paused and, unless hands-off, halts on tasks
  flagged ``requires_confirmation`` until resume() is called
- execute_task: one turn through the TransportBridge for the assigned agent

Planner failures (malformed output, transport errors) never fail a run: the
deterministic local plan is used instead.

Events emitted (session_id is the run id):
- EXECUTION_STATE_CHANGE: Run state transitions
- EXECUTION_PLAN_READY: The validated plan, once per run
- EXECUTION_AGENT_STATE: thinking → responding → done | error per task
- EXECUTION_APPROVAL_NEEDED: A task waits for confirmation
- EXECUTION_TASK_COMPLETE: A task finished (successfully or not)
- EXECUTION_COST_ALERT: A budget crossed 80% or 100%
"""

import asyncio
import contextlib
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.context import ContextManager
from agents.planner import PlannerAgent
from agents.prompts import get_task_prompt
from agents.registry import AgentRegistry, get_agent_registry
from agents.utils import build_cost_record
from bridges.base import BridgeEvent, BridgeEventKind, TransportBridge
from config import Settings, settings as default_settings
from errors import (
    AlreadyRunningError,
    InvalidTransitionError,
    ParseError,
    SessionCancelledError,
    TransportError,
    ValidationError,
)
from events.bus import EventBus
from events.types import EventType, SessionEvent
from metrics import CostTracker
from models.schemas import (
    AgentState,
    ExecutionState,
    ModelTier,
    Plan,
    ProjectPayload,
    SessionOptions,
    Task,
)

logger = structlog.get_logger(__name__)

RUNNING_STATES = frozenset(
    {
        ExecutionState.PLANNING,
        ExecutionState.EXECUTING,
        ExecutionState.AWAITING_APPROVAL,
        ExecutionState.PAUSED,
    }
)

# Characters of a task's output kept as the agent's note
NOTE_PREVIEW_CHARS = 2000


class ExecutionGraphState(TypedDict):
    """State flowing through the execution graph.

    Attributes:
        run_id: Run identifier for events
        tasks: Validated tasks in walk order
        index: Position of the next task
        hands_off: Whether confirmation gates are bypassed
        completed: Titles of tasks that finished successfully
        failed: Titles of tasks that errored
        status: Walk status
    """

    run_id: str
    tasks: list[Task]
    index: int
    hands_off: bool
    completed: list[str]
    failed: list[str]
    status: Literal["executing", "completed", "cancelled"]


def create_execution_state(run_id: str, plan: Plan, hands_off: bool) -> ExecutionGraphState:
    return ExecutionGraphState(
        run_id=run_id,
        tasks=plan.iter_tasks(),
        index=0,
        hands_off=hands_off,
        completed=[],
        failed=[],
        status="executing",
    )


@dataclass
class CoordinatorRun:
    """Result of starting a run: the plan that will be walked."""

    run_id: str
    plan: Plan
    hands_off: bool = False
    fallback_plan_used: bool = False
    fallback_reason: str | None = None
    dropped_tasks: list[dict[str, Any]] = field(default_factory=list)


class ExecutionCoordinator:
    """Walks a Plan task by task through the shared TransportBridge.

    The coordinator holds the bridge but never the SessionController.

    Usage:
        >>> coordinator = ExecutionCoordinator(bridge, event_bus)
        >>> run = await coordinator.start_session(payload, hands_off=True)
        >>> await coordinator.wait()
        >>> coordinator.get_summary()
    """

    def __init__(
        self,
        bridge: TransportBridge | None,
        event_bus: EventBus,
        registry: AgentRegistry | None = None,
        context_manager: ContextManager | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.bridge = bridge
        self.event_bus = event_bus
        self.registry = registry or get_agent_registry()
        self.context_manager = context_manager or ContextManager()
        self.settings = settings or default_settings

        self._state = ExecutionState.IDLE
        self._run: CoordinatorRun | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._graph_state: ExecutionGraphState | None = None
        self._agent_states: dict[str, AgentState] = {}
        self._cost_tracker = self._new_cost_tracker()
        self._approval = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._cancelled = False
        self._turn_active = False
        self._current_task: Task | None = None
        self._compiled_graph = self._build_graph()

    def _new_cost_tracker(self) -> CostTracker:
        return CostTracker(
            session_budget=self.settings.session_budget_usd,
            agent_budget=self.settings.agent_budget_usd,
            tier_budgets={tier.value: self.settings.tier_budget(tier) for tier in ModelTier},
        )

    # -----------------------------------------------------------------
    # Graph
    # -----------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ExecutionGraphState)

        graph.add_node("gate", self._gate)
        graph.add_node("execute_task", self._execute_task)

        graph.add_conditional_edges(
            START,
            self._next_step,
            {"continue": "gate", "end": END},
        )
        graph.add_conditional_edges(
            "gate",
            self._after_gate,
            {"execute": "execute_task", "end": END},
        )
        graph.add_conditional_edges(
            "execute_task",
            self._next_step,
            {"continue": "gate", "end": END},
        )

        return graph.compile()

    def _next_step(self, state: ExecutionGraphState) -> str:
        if state["status"] != "executing" or self._cancelled:
            return "end"
        if state["index"] >= len(state["tasks"]):
            return "end"
        return "continue"

    def _after_gate(self, state: ExecutionGraphState) -> str:
        return "end" if state["status"] != "executing" else "execute"

    async def _gate(self, state: ExecutionGraphState) -> dict[str, Any]:
        """Hold the walk while paused or while a task awaits confirmation."""
        await self._resumed.wait()
        if self._cancelled:
            return {"status": "cancelled"}

        task = state["tasks"][state["index"]]
        if task.requires_confirmation and not state["hands_off"]:
            self._approval.clear()
            await self._set_state(ExecutionState.AWAITING_APPROVAL)
            await self._publish(
                EventType.EXECUTION_APPROVAL_NEEDED,
                {"task": task.model_dump(by_alias=True)},
                agent_id=task.assigned_to,
            )
            logger.info(
                "execution_awaiting_approval",
                run_id=state["run_id"],
                task=task.title,
                agent_id=task.assigned_to,
            )
            await self._approval.wait()
            if self._cancelled:
                return {"status": "cancelled"}
            await self._set_state(ExecutionState.EXECUTING)
        return {}

    async def _execute_task(self, state: ExecutionGraphState) -> dict[str, Any]:
        """Run one task as a single bridge turn for its agent."""
        task = state["tasks"][state["index"]]
        agent = self.registry.validate_assignment(task.assigned_to)
        self._current_task = task
        run_id = state["run_id"]

        await self._set_agent_state(agent.id, AgentState.THINKING, task)
        window = self.context_manager.build_agent_context(agent.id, task.tier, task)
        prompt = get_task_prompt(agent, task, window.system_context)
        options = SessionOptions(
            prompt=prompt,
            model=self.settings.model_for_tier(task.tier),
            hands_off=state["hands_off"],
        )

        responding = False

        async def on_progress(event: BridgeEvent) -> None:
            nonlocal responding
            if event.kind == BridgeEventKind.PROGRESS and not responding:
                responding = True
                await self._set_agent_state(agent.id, AgentState.RESPONDING, task)

        logger.info(
            "execution_task_start",
            run_id=run_id,
            task=task.title,
            agent_id=agent.id,
            tier=task.tier.value,
            context_tokens=window.used,
        )

        error: str | None = None
        result = None
        unsubscribe = self.bridge.add_listener(on_progress) if self.bridge is not None else None
        self._turn_active = True
        try:
            if self.bridge is None:
                raise TransportError("No transport bridge available")
            result = await self.bridge.run_turn(
                prompt,
                options,
                timeout=float(self.settings.request_timeout_seconds),
            )
            if not result.success:
                error = f"Turn exited with code {result.exit_code}"
        except SessionCancelledError:
            await self._set_agent_state(agent.id, AgentState.IDLE, task)
            return {"status": "cancelled"}
        except (TransportError, AlreadyRunningError) as e:
            error = e.message
        finally:
            self._turn_active = False
            if unsubscribe is not None:
                unsubscribe()

        if self._cancelled:
            await self._set_agent_state(agent.id, AgentState.IDLE, task)
            return {"status": "cancelled"}

        cost = 0.0
        if result is not None:
            record = build_cost_record(run_id, result.usage)
            cost = record.total_cost
            for alert in self._cost_tracker.record(agent.id, task.tier.value, record):
                await self._publish(
                    EventType.EXECUTION_COST_ALERT,
                    {
                        "scope": alert.scope,
                        "key": alert.key,
                        "level": alert.level,
                        "spent": round(alert.spent, 6),
                        "budget": alert.budget,
                    },
                    agent_id=agent.id,
                )
            if result.text:
                self.context_manager.add_agent_context(
                    agent.id, result.text[:NOTE_PREVIEW_CHARS], category="task"
                )

        success = error is None
        await self._set_agent_state(
            agent.id, AgentState.DONE if success else AgentState.ERROR, task
        )
        self.context_manager.add_message(
            agent.id,
            "@all",
            f"{'Completed' if success else 'Failed'}: {task.title}",
            type="status",
        )
        await self._publish(
            EventType.EXECUTION_TASK_COMPLETE,
            {
                "task": task.title,
                "phase": task.phase,
                "success": success,
                "error": error,
                "cost": round(cost, 6),
            },
            agent_id=agent.id,
        )
        if success:
            logger.info("execution_task_complete", run_id=run_id, task=task.title, agent_id=agent.id)
        else:
            logger.warning(
                "execution_task_failed",
                run_id=run_id,
                task=task.title,
                agent_id=agent.id,
                error=error,
            )

        self._current_task = None
        return {
            "index": state["index"] + 1,
            "completed": state["completed"] + ([task.title] if success else []),
            "failed": state["failed"] + ([] if success else [task.title]),
        }

    # -----------------------------------------------------------------
    # Start
    # -----------------------------------------------------------------

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state in RUNNING_STATES

    @property
    def run(self) -> CoordinatorRun | None:
        return self._run

    def agent_states(self) -> dict[str, AgentState]:
        return {
            entry.id: self._agent_states.get(entry.id, AgentState.IDLE)
            for entry in self.registry.get_all()
        }

    async def start_session(
        self,
        payload: ProjectPayload,
        hands_off: bool = False,
        planner: PlannerAgent | None = None,
        use_planner: bool = True,
    ) -> CoordinatorRun:
        """Plan a project and start walking the plan in the background.

        Args:
            payload: Graph payload describing the project.
            hands_off: Bypass confirmation gates.
            planner: Planner to ask (defaults to one on the shared bridge).
            use_planner: False skips the planning turn and uses the local plan.

        Returns:
            The run with its validated plan.

        Raises:
            AlreadyRunningError: If a run is in progress.
        """
        if self.is_running:
            raise AlreadyRunningError(
                f"Execution run {self._run.run_id if self._run else ''} is {self._state.value}",
                state=self._state.value,
            )

        run_id = f"run_{uuid.uuid4().hex[:12]}"
        self._run = CoordinatorRun(run_id=run_id, plan=Plan.model_construct(phases=[]), hands_off=hands_off)
        self._reset()
        self.context_manager.clear()
        context = self.context_manager.load(payload)
        planner = planner or PlannerAgent(self.bridge, self.registry, self.settings)

        logger.info(
            "execution_run_start",
            run_id=run_id,
            project_name=context.project_name,
            hands_off=hands_off,
            use_planner=use_planner,
        )
        await self._set_state(ExecutionState.PLANNING)

        plan, fallback_reason = await self._request_plan(planner, use_planner)
        plan, dropped = self._validate_plan(plan)
        if plan.task_count == 0 and fallback_reason is None:
            fallback_reason = "Planner assigned no task to a known agent"
            logger.warning("planner_plan_empty_after_validation", run_id=run_id)
            plan, more_dropped = self._validate_plan(planner.create_local_plan(context))
            dropped += more_dropped

        run = CoordinatorRun(
            run_id=run_id,
            plan=plan,
            hands_off=hands_off,
            fallback_plan_used=fallback_reason is not None,
            fallback_reason=fallback_reason,
            dropped_tasks=dropped,
        )
        self._run = run
        self.context_manager.add_message("coo", "@all", plan.summary or "Plan ready.", type="plan")

        await self._publish(
            EventType.EXECUTION_PLAN_READY,
            {
                "plan": plan.model_dump(by_alias=True),
                "fallback_plan_used": run.fallback_plan_used,
                "fallback_reason": fallback_reason,
                "dropped_tasks": dropped,
            },
        )
        if self._cancelled:
            logger.info("execution_run_cancelled_during_planning", run_id=run_id)
            return run
        await self._set_state(ExecutionState.EXECUTING)

        self._graph_state = create_execution_state(run_id, plan, hands_off)
        self._run_task = asyncio.create_task(
            self._walk(self._graph_state), name=f"execution_run_{run_id}"
        )
        return run

    async def _request_plan(
        self, planner: PlannerAgent, use_planner: bool
    ) -> tuple[Plan, str | None]:
        context = self.context_manager.context
        if not use_planner:
            return planner.create_local_plan(context), "Planner disabled for this run"
        try:
            return await planner.execute(self.context_manager.serialize_prompt()), None
        except (ParseError, TransportError, AlreadyRunningError, SessionCancelledError) as e:
            reason = f"{type(e).__name__}: {e.message}"
            logger.warning(
                "planner_fallback_to_local_plan",
                run_id=self._run.run_id if self._run else None,
                reason=reason,
            )
            return planner.create_local_plan(context), reason

    def _validate_plan(self, plan: Plan) -> tuple[Plan, list[dict[str, Any]]]:
        """Drop tasks whose agent is unknown or human."""
        dropped: list[dict[str, Any]] = []
        phases = []
        for phase in plan.phases:
            milestones = []
            for milestone in phase.milestones:
                kept = []
                for task in milestone.tasks:
                    try:
                        self.registry.validate_assignment(task.assigned_to)
                    except ValidationError as e:
                        logger.warning(
                            "plan_task_dropped",
                            task=task.title,
                            assigned_to=task.assigned_to,
                            reason=e.message,
                        )
                        dropped.append(
                            {"title": task.title, "assignedTo": task.assigned_to, "reason": e.message}
                        )
                        continue
                    kept.append(task)
                milestones.append(milestone.model_copy(update={"tasks": kept}))
            phases.append(phase.model_copy(update={"milestones": milestones}))
        return plan.model_copy(update={"phases": phases}), dropped

    async def _walk(self, state: ExecutionGraphState) -> None:
        run_id = state["run_id"]
        try:
            final_state = await self._compiled_graph.ainvoke(
                state,
                config={"recursion_limit": 3 * len(state["tasks"]) + 10},
            )
        except asyncio.CancelledError:
            await self._set_state(ExecutionState.CANCELLED)
            raise
        except Exception as e:
            logger.error("execution_run_failed", run_id=run_id, error=str(e), error_type=type(e).__name__)
            await self._set_state(ExecutionState.FAILED, error=str(e))
            return

        self._graph_state = final_state
        if self._cancelled or final_state["status"] == "cancelled":
            target = ExecutionState.CANCELLED
        elif final_state["tasks"] and not final_state["completed"]:
            target = ExecutionState.FAILED
        else:
            target = ExecutionState.COMPLETED
        logger.info(
            "execution_run_finished",
            run_id=run_id,
            state=target.value,
            completed=len(final_state["completed"]),
            failed=len(final_state["failed"]),
            **self._cost_tracker.report(),
        )
        await self._set_state(target)

    # -----------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------

    async def pause(self) -> None:
        """Hold the walk before the next task.

        Raises:
            InvalidTransitionError: If the run is not executing.
        """
        if self._state != ExecutionState.EXECUTING:
            raise InvalidTransitionError(self._state.value, "pause")
        self._resumed.clear()
        await self._set_state(ExecutionState.PAUSED)

    async def resume(self) -> None:
        """Continue a paused run or confirm the task awaiting approval.

        Raises:
            InvalidTransitionError: If the run is neither paused nor awaiting approval.
        """
        if self._state == ExecutionState.AWAITING_APPROVAL:
            logger.info(
                "execution_task_approved",
                run_id=self._run.run_id if self._run else None,
            )
            self._approval.set()
            return
        if self._state != ExecutionState.PAUSED:
            raise InvalidTransitionError(self._state.value, "resume")
        await self._set_state(ExecutionState.EXECUTING)
        self._resumed.set()

    async def cancel(self) -> bool:
        """Stop the run. Returns False when nothing is running."""
        if not self.is_running:
            return False
        logger.info("execution_run_cancel", run_id=self._run.run_id if self._run else None)
        self._cancelled = True
        self._approval.set()
        self._resumed.set()
        planning = self._state == ExecutionState.PLANNING
        if (self._turn_active or planning) and self.bridge is not None and self.bridge.is_active:
            await self.bridge.cancel()

        task = self._run_task
        if task is not None and not task.done():
            _, pending = await asyncio.wait({task}, timeout=self.settings.cancel_ack_timeout_seconds)
            if pending:
                logger.warning("execution_run_cancel_timeout", run_id=self._run.run_id if self._run else None)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._state != ExecutionState.CANCELLED:
            await self._set_state(ExecutionState.CANCELLED)
        return True

    def post_message(self, text: str) -> None:
        """Broadcast CEO chat input to the agents of later tasks."""
        self.context_manager.add_message("ceo", "@all", text, type="broadcast")
        logger.info("execution_message_posted", length=len(text))

    async def wait(self) -> None:
        """Wait until the current run has finished."""
        if self._run_task is not None:
            await self._run_task

    def get_summary(self) -> dict[str, Any]:
        run = self._run
        state = self._graph_state
        return {
            "runId": run.run_id if run else None,
            "state": self._state.value,
            "handsOff": run.hands_off if run else False,
            "fallbackPlanUsed": run.fallback_plan_used if run else False,
            "fallbackReason": run.fallback_reason if run else None,
            "totalTasks": len(state["tasks"]) if state else 0,
            "completed": list(state["completed"]) if state else [],
            "failed": list(state["failed"]) if state else [],
            "droppedTasks": list(run.dropped_tasks) if run else [],
            "currentTask": self._current_task.title if self._current_task else None,
            "agentStates": {k: v.value for k, v in self._agent_states.items()},
            "costs": self._cost_tracker.report(),
        }

    async def shutdown(self) -> None:
        if self.is_running:
            await self.cancel()

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    def _reset(self) -> None:
        self._cancelled = False
        self._approval = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._agent_states.clear()
        self._cost_tracker = self._new_cost_tracker()
        self._graph_state = None
        self._current_task = None

    async def _set_state(self, target: ExecutionState, **extra: Any) -> None:
        previous = self._state
        if previous == target:
            return
        self._state = target
        logger.info(
            "execution_state_change",
            run_id=self._run.run_id if self._run else None,
            previous=previous.value,
            current=target.value,
        )
        await self._publish(
            EventType.EXECUTION_STATE_CHANGE,
            {"previous": previous.value, "current": target.value, **extra},
        )

    async def _set_agent_state(self, agent_id: str, target: AgentState, task: Task) -> None:
        previous = self._agent_states.get(agent_id, AgentState.IDLE)
        self._agent_states[agent_id] = target
        await self._publish(
            EventType.EXECUTION_AGENT_STATE,
            {"previous": previous.value, "current": target.value, "task": task.title},
            agent_id=agent_id,
        )

    async def _publish(
        self, event_type: EventType, data: dict[str, Any], agent_id: str | None = None
    ) -> None:
        if self._run is None:
            return
        await self.event_bus.publish(
            SessionEvent(
                type=event_type,
                session_id=self._run.run_id,
                agent_id=agent_id,
                data=data,
            )
        )
