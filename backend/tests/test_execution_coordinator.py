"""Tests for execution_coordinator.py -- planning, validation and the walk.

Every run goes through a ScriptedBridge: the first script entry answers the
planning turn (unless the planner is disabled), later entries answer task
turns in walk order.
"""

import asyncio
import json
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from conftest import ScriptedBridge, drain, make_payload, make_settings
from errors import AlreadyRunningError, InvalidTransitionError
from events.bus import EventBus
from events.types import EventType
from execution_coordinator import ExecutionCoordinator
from models.schemas import AgentState, ExecutionState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _task(title: str, agent: str, **extra: Any) -> dict[str, Any]:
    return {"title": title, "priority": "high", "assignedTo": agent, "tier": "standard", **extra}


def _plan_json(*tasks: dict[str, Any]) -> str:
    return json.dumps(
        {
            "phases": [
                {
                    "name": "Build",
                    "routingTier": "standard",
                    "milestones": [{"title": "All", "tasks": list(tasks)}],
                }
            ],
            "summary": "Scripted plan",
        }
    )


def _coordinator(bridge: ScriptedBridge, event_bus: EventBus, **settings: Any) -> ExecutionCoordinator:
    return ExecutionCoordinator(bridge, event_bus, settings=make_settings(**settings))


async def _wait_state(coordinator: ExecutionCoordinator, state: ExecutionState) -> None:
    async def poll() -> None:
        while coordinator.state != state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=2.0)


def _of_type(events: list, event_type: EventType) -> list:
    return [e for e in events if e.type == event_type]


# =========================================================================
# Planning
# =========================================================================


class TestPlanning:
    """Planner output, fallback and assignment validation."""

    async def test_planner_plan_is_walked(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [_plan_json(_task("Build API", "backend"), _task("Build UI", "frontend")), "api done", "ui done"]
        )
        coordinator = _coordinator(bridge, event_bus)
        sub = event_bus.subscribe()

        run = await coordinator.start_session(make_payload())
        await coordinator.wait()

        assert run.run_id.startswith("run_")
        assert run.fallback_plan_used is False
        assert coordinator.state == ExecutionState.COMPLETED
        summary = coordinator.get_summary()
        assert summary["completed"] == ["Build API", "Build UI"]
        assert summary["failed"] == []

        events = drain(sub)
        (ready,) = _of_type(events, EventType.EXECUTION_PLAN_READY)
        assert ready.session_id == run.run_id
        assert ready.data["fallback_plan_used"] is False
        states = [(e.data["previous"], e.data["current"]) for e in _of_type(events, EventType.EXECUTION_STATE_CHANGE)]
        assert states == [
            ("idle", "planning"),
            ("planning", "executing"),
            ("executing", "completed"),
        ]

    async def test_malformed_planner_output_falls_back_to_local_plan(
        self, event_bus: EventBus
    ) -> None:
        bridge = ScriptedBridge(["Sorry, I can't produce JSON today."])
        coordinator = _coordinator(bridge, event_bus)

        run = await coordinator.start_session(make_payload(), hands_off=True)
        await coordinator.wait()

        assert run.fallback_plan_used is True
        assert run.fallback_reason.startswith("ParseError:")
        assert run.plan.task_count == 12
        assert coordinator.state == ExecutionState.COMPLETED
        assert len(coordinator.get_summary()["completed"]) == 12

    async def test_transport_failure_falls_back(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge([("crash", 1)] * 3)
        coordinator = _coordinator(bridge, event_bus, planner_max_retries=2)

        run = await coordinator.start_session(make_payload(), hands_off=True)
        await coordinator.wait()

        assert run.fallback_reason.startswith("TransportError:")
        assert coordinator.state == ExecutionState.COMPLETED

    async def test_planner_disabled_uses_local_plan(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge()
        coordinator = _coordinator(bridge, event_bus)

        run = await coordinator.start_session(make_payload(), hands_off=True, use_planner=False)
        await coordinator.wait()

        assert run.fallback_reason == "Planner disabled for this run"
        assert len(bridge.prompts) == 12

    async def test_unknown_and_human_assignments_dropped(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [
                _plan_json(
                    _task("Approve scope", "ceo"),
                    _task("Cast spells", "wizard"),
                    _task("Build API", "backend"),
                )
            ]
        )
        coordinator = _coordinator(bridge, event_bus)

        run = await coordinator.start_session(make_payload())
        await coordinator.wait()

        assert run.fallback_plan_used is False
        assert [task.title for task in run.plan.iter_tasks()] == ["Build API"]
        assert [d["assignedTo"] for d in run.dropped_tasks] == ["ceo", "wizard"]
        assert coordinator.get_summary()["completed"] == ["Build API"]

    async def test_plan_with_no_valid_assignment_falls_back(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge([_plan_json(_task("Cast spells", "wizard"))])
        coordinator = _coordinator(bridge, event_bus)

        run = await coordinator.start_session(make_payload(), hands_off=True)
        await coordinator.wait()

        assert run.fallback_reason == "Planner assigned no task to a known agent"
        assert run.plan.task_count == 12
        assert len(run.dropped_tasks) == 1

    async def test_second_start_rejected_while_running(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge([_plan_json(_task("Build API", "backend"))], hold=True)
        coordinator = _coordinator(bridge, event_bus)
        planning = asyncio.create_task(coordinator.start_session(make_payload()))
        await _wait_state(coordinator, ExecutionState.PLANNING)

        with pytest.raises(AlreadyRunningError):
            await coordinator.start_session(make_payload())

        bridge.release()
        await planning
        await coordinator.wait()
        assert coordinator.state == ExecutionState.COMPLETED


# =========================================================================
# Walking tasks
# =========================================================================


class TestWalk:
    """Sequential task execution, agent states and failures."""

    async def test_agent_state_sequence(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge([_plan_json(_task("Build API", "backend")), "done"])
        coordinator = _coordinator(bridge, event_bus)
        sub = event_bus.subscribe(topics=[EventType.EXECUTION_AGENT_STATE])

        await coordinator.start_session(make_payload())
        await coordinator.wait()

        transitions = [(e.agent_id, e.data["current"]) for e in drain(sub)]
        assert transitions == [
            ("backend", "thinking"),
            ("backend", "responding"),
            ("backend", "done"),
        ]
        assert coordinator.agent_states()["backend"] == AgentState.DONE
        assert coordinator.agent_states()["frontend"] == AgentState.IDLE

    async def test_task_prompt_targets_agent_and_tier_model(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [_plan_json(_task("Threat model", "sentinel", tier="opus")), "done"]
        )
        coordinator = _coordinator(bridge, event_bus)

        await coordinator.start_session(make_payload(), hands_off=True)
        await coordinator.wait()

        prompt = bridge.prompts[1]
        assert prompt.startswith("You are the Sentinel")
        assert "Threat model" in prompt
        assert "Project: Todo App" in prompt
        assert bridge.options[1].model == "anthropic/claude-opus-4-6"
        assert bridge.options[1].hands_off is True

    async def test_failed_task_does_not_stop_the_walk(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [
                _plan_json(_task("Build API", "backend"), _task("Build UI", "frontend")),
                ("compile error", 1),
                "ui done",
            ]
        )
        coordinator = _coordinator(bridge, event_bus)
        sub = event_bus.subscribe(topics=[EventType.EXECUTION_TASK_COMPLETE])

        await coordinator.start_session(make_payload())
        await coordinator.wait()

        first, second = drain(sub)
        assert first.data["success"] is False
        assert first.data["error"] == "Turn exited with code 1"
        assert second.data["success"] is True
        assert coordinator.state == ExecutionState.COMPLETED
        assert coordinator.get_summary()["failed"] == ["Build API"]
        assert coordinator.agent_states()["backend"] == AgentState.ERROR

    async def test_run_fails_when_every_task_fails(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge([_plan_json(_task("Build API", "backend")), ("boom", 1)])
        coordinator = _coordinator(bridge, event_bus)

        await coordinator.start_session(make_payload())
        await coordinator.wait()

        assert coordinator.state == ExecutionState.FAILED

    async def test_walk_crash_marks_run_failed_and_wait_returns(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge([_plan_json(_task("Build API", "backend"))])
        coordinator = _coordinator(bridge, event_bus)
        coordinator._compiled_graph = SimpleNamespace(
            ainvoke=AsyncMock(side_effect=RuntimeError("graph exploded"))
        )
        sub = event_bus.subscribe(topics=[EventType.EXECUTION_STATE_CHANGE])

        await coordinator.start_session(make_payload())
        await coordinator.wait()

        assert coordinator.state == ExecutionState.FAILED
        assert coordinator.is_running is False
        failed = [e for e in drain(sub) if e.data["current"] == "failed"]
        assert failed[0].data["error"] == "graph exploded"

    async def test_completed_task_output_becomes_agent_note(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge([_plan_json(_task("Build API", "backend")), "Used FastAPI."])
        coordinator = _coordinator(bridge, event_bus)

        await coordinator.start_session(make_payload())
        await coordinator.wait()

        assert coordinator.context_manager.agent_notes("backend") == ["Used FastAPI."]
        contents = [m.content for m in coordinator.context_manager.messages]
        assert "Completed: Build API" in contents

    async def test_posted_message_reaches_later_tasks(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [_plan_json(_task("Build API", "backend"), _task("Build UI", "frontend")), "a", "b"],
        )
        coordinator = _coordinator(bridge, event_bus)
        coordinator.post_message("Use PostgreSQL")

        await coordinator.start_session(make_payload())
        coordinator.post_message("Prefer dark colours")
        await coordinator.wait()

        assert "Prefer dark colours" in bridge.prompts[-1]


# =========================================================================
# Approval gate
# =========================================================================


class TestApprovalGate:
    """Tasks flagged requires_confirmation halt until resumed."""

    async def test_gate_waits_for_resume(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [_plan_json(_task("Drop tables", "backend", requiresConfirmation=True)), "dropped"]
        )
        coordinator = _coordinator(bridge, event_bus)
        sub = event_bus.subscribe(topics=[EventType.EXECUTION_APPROVAL_NEEDED])

        await coordinator.start_session(make_payload())
        await _wait_state(coordinator, ExecutionState.AWAITING_APPROVAL)

        (event,) = drain(sub)
        assert event.agent_id == "backend"
        assert event.data["task"]["title"] == "Drop tables"
        assert len(bridge.prompts) == 1

        await coordinator.resume()
        await coordinator.wait()
        assert coordinator.state == ExecutionState.COMPLETED
        assert len(bridge.prompts) == 2

    async def test_hands_off_bypasses_gate(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [_plan_json(_task("Drop tables", "backend", requiresConfirmation=True)), "dropped"]
        )
        coordinator = _coordinator(bridge, event_bus)
        sub = event_bus.subscribe(topics=[EventType.EXECUTION_APPROVAL_NEEDED])

        await coordinator.start_session(make_payload(), hands_off=True)
        await coordinator.wait()

        assert drain(sub) == []
        assert coordinator.state == ExecutionState.COMPLETED

    async def test_cancel_while_awaiting_approval(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(
            [_plan_json(_task("Drop tables", "backend", requiresConfirmation=True))]
        )
        coordinator = _coordinator(bridge, event_bus)

        await coordinator.start_session(make_payload())
        await _wait_state(coordinator, ExecutionState.AWAITING_APPROVAL)

        assert await coordinator.cancel() is True
        assert coordinator.state == ExecutionState.CANCELLED
        assert len(bridge.prompts) == 1


# =========================================================================
# Pause / cancel
# =========================================================================


class TestControl:
    """pause, resume and cancel of a run."""

    async def test_pause_holds_before_next_task(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(hold=True)
        coordinator = _coordinator(bridge, event_bus)

        await coordinator.start_session(make_payload(), hands_off=True, use_planner=False)
        await asyncio.sleep(0.05)
        assert bridge.is_active
        await coordinator.pause()
        assert coordinator.state == ExecutionState.PAUSED

        bridge.release()
        await asyncio.sleep(0.1)
        assert len(bridge.prompts) == 1
        assert coordinator.get_summary()["completed"] == ["Initialize project structure and dependencies"]

        await coordinator.resume()
        await coordinator.wait()
        assert coordinator.state == ExecutionState.COMPLETED
        assert len(bridge.prompts) == 12

    async def test_pause_requires_executing(self, event_bus: EventBus) -> None:
        coordinator = _coordinator(ScriptedBridge(), event_bus)
        with pytest.raises(InvalidTransitionError):
            await coordinator.pause()
        with pytest.raises(InvalidTransitionError):
            await coordinator.resume()

    async def test_cancel_mid_turn(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge(hold=True)
        coordinator = _coordinator(bridge, event_bus)

        await coordinator.start_session(make_payload(), hands_off=True, use_planner=False)
        await asyncio.sleep(0.05)
        assert bridge.is_active

        assert await coordinator.cancel() is True
        assert coordinator.state == ExecutionState.CANCELLED
        assert bridge.cancel_calls == 1
        assert len(bridge.prompts) == 1
        assert coordinator.agent_states()["devops"] == AgentState.IDLE

    async def test_cancel_when_idle(self, event_bus: EventBus) -> None:
        coordinator = _coordinator(ScriptedBridge(), event_bus)
        assert await coordinator.cancel() is False
        assert coordinator.state == ExecutionState.IDLE

    async def test_new_run_after_cancel(self, event_bus: EventBus) -> None:
        bridge = ScriptedBridge()
        coordinator = _coordinator(bridge, event_bus)
        # Setup tasks run, then Core Architecture halts for confirmation
        await coordinator.start_session(make_payload(), use_planner=False)
        await _wait_state(coordinator, ExecutionState.AWAITING_APPROVAL)
        assert len(bridge.prompts) == 3
        await coordinator.cancel()

        run = await coordinator.start_session(make_payload(), hands_off=True, use_planner=False)
        await coordinator.wait()
        assert coordinator.run is run
        assert coordinator.state == ExecutionState.COMPLETED
        assert len(bridge.prompts) == 15
        assert coordinator.get_summary()["totalTasks"] == 12


# =========================================================================
# Cost alerts
# =========================================================================


class TestCostAlerts:
    """Budget alerts at 80% and 100%."""

    async def test_session_budget_alerts(self, event_bus: EventBus) -> None:
        # Each scripted turn is 1000 in / 500 out on the standard model: $0.0105
        bridge = ScriptedBridge(
            [_plan_json(_task("Build API", "backend"), _task("Write tests", "backend")), "a", "b"]
        )
        coordinator = _coordinator(bridge, event_bus, session_budget_usd=0.012)
        sub = event_bus.subscribe(topics=[EventType.EXECUTION_COST_ALERT])

        await coordinator.start_session(make_payload())
        await coordinator.wait()

        alerts = [(e.data["scope"], e.data["level"]) for e in drain(sub)]
        assert alerts == [("session", "warning"), ("session", "exceeded")]
        costs = coordinator.get_summary()["costs"]
        assert costs["calls"] == 2
        assert costs["totalCost"] == pytest.approx(0.021)
        assert costs["byAgent"]["backend"] == pytest.approx(0.021)
