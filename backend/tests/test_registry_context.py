"""Tests for agents/registry.py and agents/context.py -- the agent roster and
per-session project context.
"""

import pytest

from agents.context import (
    TIER_BUDGETS,
    ContextManager,
    estimate_tokens,
    parse_priority,
)
from agents.registry import AgentRegistry, get_agent_registry
from conftest import make_payload
from errors import ValidationError
from models.schemas import GraphNode, ModelTier, Priority, ProjectPayload, Task

# =========================================================================
# AgentRegistry
# =========================================================================


class TestAgentRegistry:
    """Roster lookups and assignment validation."""

    def test_roster_size(self) -> None:
        registry = AgentRegistry()
        assert len(registry.get_all()) == 16
        assert len(registry.get_executable()) == 15
        assert registry.get_all()[0].id == "ceo"

    def test_lookup(self) -> None:
        registry = AgentRegistry()
        sentinel = registry.get("sentinel")
        assert sentinel is not None
        assert sentinel.tier == ModelTier.OPUS
        assert sentinel.reports_to == "cto"
        assert registry.get("wizard") is None
        assert "backend" in registry
        assert "wizard" not in registry

    def test_validate_assignment(self) -> None:
        registry = AgentRegistry()
        assert registry.validate_assignment("backend").label == "Backend"

    def test_unknown_agent_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            AgentRegistry().validate_assignment("wizard")
        assert exc_info.value.details["agent_id"] == "wizard"

    def test_human_principal_rejected(self) -> None:
        with pytest.raises(ValidationError, match="human role"):
            AgentRegistry().validate_assignment("ceo")

    def test_by_tier(self) -> None:
        registry = AgentRegistry()
        assert {e.id for e in registry.get_by_tier(ModelTier.OPUS)} == {"cto", "sentinel"}
        assert len(registry.get_by_tier("flash")) == 4

    def test_reports_and_capabilities(self) -> None:
        registry = AgentRegistry()
        assert [e.id for e in registry.get_direct_reports("cfo")] == ["token-auditor", "api-cost-auditor"]
        assert {e.id for e in registry.get_by_capability("deploy")} == {"devops"}

    def test_org_chart(self) -> None:
        chart = AgentRegistry().get_org_chart()
        assert chart["ceo"]["reportsTo"] is None
        assert set(chart["ceo"]["directReports"]) == {"coo", "cto"}
        assert chart["sentinel"]["tier"] == "opus"

    def test_stats(self) -> None:
        stats = AgentRegistry().get_stats()
        assert stats == {
            "total": 16,
            "executable": 15,
            "byTier": {"flash": 4, "standard": 10, "opus": 2},
        }

    def test_global_registry_is_shared(self) -> None:
        assert get_agent_registry() is get_agent_registry()


# =========================================================================
# Context loading
# =========================================================================


class TestContextLoading:
    """Deriving a ProjectContext from a graph payload."""

    def test_todo_graph(self) -> None:
        manager = ContextManager()
        context = manager.load(make_payload())

        assert context.project_name == "Todo App"
        assert [f.text for f in context.features] == [
            "User authentication API",
            "Task list page",
            "Deploy pipeline",
            "Dark theme",
        ]
        assert [r.text for r in context.risks] == ["Token leakage"]
        assert context.constraints == []
        assert manager.node_count == 6
        assert manager.connection_count == 5

    def test_explicit_project_name(self) -> None:
        manager = ContextManager()
        context = manager.load(make_payload(), project_name="Renamed")
        assert context.project_name == "Renamed"
        # The root node is then an ordinary feature.
        assert "Todo App" in [f.text for f in context.features]

    def test_payload_project_name(self) -> None:
        context = ContextManager().load(make_payload(project_name="From Payload"))
        assert context.project_name == "From Payload"

    def test_tech_notes_become_stack(self) -> None:
        payload = ProjectPayload(
            nodes=[
                GraphNode(id="a", text="Shop"),
                GraphNode(id="b", text="FastAPI", node_type="techNote"),
                GraphNode(id="c", text="PostgreSQL", node_type="techNote"),
            ]
        )
        assert ContextManager().load(payload).stack == ["FastAPI", "PostgreSQL"]

    def test_declared_stack_wins(self) -> None:
        payload = ProjectPayload(
            nodes=[GraphNode(id="b", text="FastAPI", node_type="techNote")], stack=["Django"]
        )
        assert ContextManager().load(payload).stack == ["Django"]

    def test_constraints_and_blank_nodes(self) -> None:
        payload = ProjectPayload(
            nodes=[
                GraphNode(id="a", text="Shop"),
                GraphNode(id="b", text="   ", node_type="feature"),
                GraphNode(id="c", text="GDPR compliant", node_type="constraint", priority="low"),
                GraphNode(id="d", text="Under 100ms", node_type="constraint", priority="critical"),
            ]
        )
        context = ContextManager().load(payload)
        assert context.features == []
        assert [c.text for c in context.constraints] == ["Under 100ms", "GDPR compliant"]

    def test_untitled_when_no_root(self) -> None:
        assert ContextManager().load(ProjectPayload()).project_name == "Untitled Project"

    def test_serialize_prompt(self) -> None:
        manager = ContextManager()
        manager.load(make_payload())
        prompt = manager.serialize_prompt()
        assert prompt.startswith("# Todo App\n\n## Features\n- [critical] User authentication API")
        assert "## Risks\n- [high] Token leakage" in prompt
        assert "## Stack" not in prompt

    def test_clear(self) -> None:
        manager = ContextManager()
        manager.load(make_payload())
        manager.add_message("ceo", "@all", "hi")
        manager.clear()
        assert manager.context.project_name == "Untitled Project"
        assert manager.node_count == 0
        assert manager.messages == []


class TestHelpers:
    """Token estimates and priority parsing."""

    def test_estimate_tokens(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_parse_priority(self) -> None:
        assert parse_priority(" HIGH ") == Priority.HIGH
        assert parse_priority(None) == Priority.MEDIUM
        assert parse_priority("urgent") == Priority.MEDIUM


# =========================================================================
# Team messages and agent windows
# =========================================================================


class TestAgentContext:
    """Visibility rules, note compression and tier budgets."""

    @pytest.fixture()
    def manager(self) -> ContextManager:
        manager = ContextManager()
        manager.load(make_payload())
        return manager

    def test_visibility(self, manager: ContextManager) -> None:
        manager.add_message("ceo", "@all", "Ship it", type="broadcast")
        manager.add_message("backend", "frontend", "diff attached", type="code")
        manager.add_message("ceo", "@cfo", "Check the bill", type="cost")

        assert [m.content for m in manager.visible_messages("backend")] == ["Ship it", "diff attached"]
        assert [m.content for m in manager.visible_messages("cfo")] == ["Ship it", "Check the bill"]
        assert len(manager.visible_messages("sentinel")) == 3
        assert [m.content for m in manager.visible_messages("documenter")] == ["Ship it"]

    def test_notes_compressed_past_limit(self, manager: ContextManager) -> None:
        for i in range(21):
            manager.add_agent_context("backend", f"note {i}")

        notes = manager.agent_notes("backend")
        assert notes == [f"note {i}" for i in range(11, 21)]
        summary = manager.agent_summary("backend")
        assert summary.startswith("[note] note 0")
        assert "note 10" in summary
        assert manager.agent_summary("frontend") == ""

    def test_window_contents(self, manager: ContextManager) -> None:
        manager.add_agent_context("backend", "Chose PostgreSQL")
        manager.add_message("ceo", "@all", "Use PostgreSQL")
        task = Task(title="Implement login endpoint", priority=Priority.HIGH, assigned_to="backend")

        window = manager.build_agent_context("backend", ModelTier.STANDARD, task)

        assert window.system_context.startswith("## Project Context\nProject: Todo App")
        assert "## Your Prior Notes\n- Chose PostgreSQL" in window.system_context
        assert "[ceo→@all] Use PostgreSQL" in window.system_context
        assert window.task_context == "Implement login endpoint"
        assert window.budget == TIER_BUDGETS[ModelTier.STANDARD]
        assert 0 < window.used <= window.budget

    def test_messages_beyond_budget_dropped(self, manager: ContextManager) -> None:
        manager.add_message("ceo", "@all", "x" * 20_000)
        manager.add_message("ceo", "@all", "latest")
        task = Task(title="Write docs", priority=Priority.LOW)

        window = manager.build_agent_context("documenter", ModelTier.FLASH, task)

        assert "latest" in window.system_context
        assert "x" * 100 not in window.system_context
        assert window.used <= TIER_BUDGETS[ModelTier.FLASH]

    def test_task_description_preferred(self, manager: ContextManager) -> None:
        task = Task(title="Login", priority=Priority.HIGH, description="Build the login form")
        window = manager.build_agent_context("frontend", ModelTier.OPUS, task)
        assert window.task_context == "Build the login form"
        assert window.budget == 32000
