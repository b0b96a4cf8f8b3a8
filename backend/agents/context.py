"""Project context slicing and per-agent context windows.

The ContextManager derives the project context (name, stack, features,
constraints) from the graph payload handed over by the editor and holds it for
the duration of a session. It also assembles what each agent sees for a task,
within a token budget that depends on the agent's capability tier. It performs
no network or disk I/O.
"""

import math
import time
from dataclasses import dataclass, field

import structlog

from models.schemas import (
    ContextItem,
    GraphNode,
    ModelTier,
    Priority,
    ProjectContext,
    ProjectPayload,
    Task,
)

logger = structlog.get_logger(__name__)

TIER_BUDGETS: dict[ModelTier, int] = {
    ModelTier.FLASH: 4000,
    ModelTier.STANDARD: 12000,
    ModelTier.OPUS: 32000,
}

PRIORITY_WEIGHT: dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}

# Which message types each role may see. Messages addressed to the role or to
# "@all" are always visible.
VISIBILITY: dict[str, dict[str, frozenset[str] | bool]] = {
    "sentinel": {"all": True},
    "project-auditor": {"all": True},
    "coo": {
        "allow": frozenset({"task", "status", "report", "escalation", "approval", "broadcast", "plan"}),
        "deny": frozenset({"code"}),
    },
    "cto": {
        "allow": frozenset({"task", "code", "architecture", "report", "security", "broadcast", "plan"}),
        "deny": frozenset(),
    },
    "cfo": {
        "allow": frozenset({"task", "cost", "report", "budget", "broadcast"}),
        "deny": frozenset({"code", "architecture"}),
    },
    "frontend": {"allow": frozenset({"task", "code", "design", "broadcast"}), "deny": frozenset()},
    "backend": {"allow": frozenset({"task", "code", "architecture", "broadcast"}), "deny": frozenset()},
    "devops": {"allow": frozenset({"task", "code", "infra", "broadcast"}), "deny": frozenset()},
}
DEFAULT_VISIBILITY: dict[str, frozenset[str] | bool] = {
    "allow": frozenset({"task", "broadcast", "report"}),
    "deny": frozenset(),
}

MAX_AGENT_ENTRIES = 20
KEPT_AGENT_ENTRIES = 10
TASK_RESERVE_TOKENS = 500


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token."""
    return math.ceil(len(text or "") / 4)


def parse_priority(value: str | None) -> Priority:
    """Normalize a declared priority; missing or unknown values count as medium."""
    try:
        return Priority((value or "").strip().lower())
    except ValueError:
        return Priority.MEDIUM


@dataclass
class TeamMessage:
    from_role: str
    to: str
    content: str
    type: str = "broadcast"
    timestamp: float = field(default_factory=time.time)


@dataclass
class AgentContext:
    """What one agent sees for one task."""

    system_context: str
    task_context: str
    budget: int
    used: int


@dataclass
class _Note:
    content: str
    category: str
    timestamp: float = field(default_factory=time.time)


class ContextManager:
    """Holds the project context of the current session.

    Usage:
        >>> manager = ContextManager()
        >>> context = manager.load(payload)
        >>> prompt = manager.serialize_prompt()
        >>> window = manager.build_agent_context("backend", ModelTier.STANDARD, task)
    """

    def __init__(self) -> None:
        self._context = ProjectContext()
        self._node_count = 0
        self._connection_count = 0
        self._messages: list[TeamMessage] = []
        self._agent_notes: dict[str, list[_Note]] = {}
        self._summaries: dict[str, str] = {}

    @property
    def context(self) -> ProjectContext:
        return self._context

    @property
    def node_count(self) -> int:
        return self._node_count

    @property
    def connection_count(self) -> int:
        return self._connection_count

    # -----------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------

    def load(self, payload: ProjectPayload, project_name: str | None = None) -> ProjectContext:
        """Derive the project context from a graph payload and hold it.

        Feature and general nodes become features, constraint nodes
        constraints, risk nodes risks. Tech-note nodes make up the stack when
        the payload does not declare one. Each bucket is ordered by priority,
        keeping graph order among equal priorities.

        Args:
            payload: The serialized graph from the editor.
            project_name: Explicit name; otherwise the payload's name, then the
                first root node with a meaningful label.

        Returns:
            The derived ProjectContext.
        """
        nodes = [node for node in payload.nodes if node.text.strip()]
        name = project_name or payload.project_name or self._root_node_name(payload)
        name_node_id = None
        if not (project_name or payload.project_name) and name:
            name_node_id = next((n.id for n in nodes if n.text.strip() == name), None)

        features: list[ContextItem] = []
        constraints: list[ContextItem] = []
        risks: list[ContextItem] = []
        tech_notes: list[str] = []

        for node in nodes:
            node_type = node.node_type or "general"
            if node_type == "techNote":
                tech_notes.append(node.text.strip())
                continue
            item = self._to_item(node)
            if node_type == "constraint":
                constraints.append(item)
            elif node_type == "risk":
                risks.append(item)
            elif node_type in ("feature", "general") and node.id != name_node_id:
                features.append(item)

        def by_priority(items: list[ContextItem]) -> list[ContextItem]:
            return sorted(items, key=lambda item: PRIORITY_WEIGHT[item.priority])

        self._context = ProjectContext(
            project_name=name or "Untitled Project",
            stack=list(payload.stack) or tech_notes,
            features=by_priority(features),
            constraints=by_priority(constraints),
            risks=by_priority(risks),
        )
        self._node_count = len(payload.nodes)
        self._connection_count = len(payload.connections)

        logger.info(
            "project_context_loaded",
            project_name=self._context.project_name,
            features=len(features),
            constraints=len(constraints),
            risks=len(risks),
        )
        return self._context

    @staticmethod
    def _to_item(node: GraphNode) -> ContextItem:
        return ContextItem(
            id=node.id,
            text=node.text.strip(),
            priority=parse_priority(node.priority),
            node_type=node.node_type or "general",
            assigned_agent=node.assigned_agent,
            phase=node.phase,
        )

    @staticmethod
    def _root_node_name(payload: ProjectPayload) -> str | None:
        targets = {
            conn.target_id
            for conn in payload.connections
            if conn.directed in ("forward", "both")
        }
        targets |= {conn.source_id for conn in payload.connections if conn.directed == "both"}
        for node in payload.nodes:
            text = node.text.strip()
            if node.id not in targets and len(text) > 2 and node.node_type in (None, "", "general"):
                return text
        return None

    # -----------------------------------------------------------------
    # Prompt and per-agent context
    # -----------------------------------------------------------------

    def project_block(self) -> str:
        """Short project summary shared by every agent."""
        ctx = self._context
        lines = ["## Project Context", f"Project: {ctx.project_name}"]
        if ctx.stack:
            lines.append(f"Stack: {', '.join(ctx.stack)}")
        if ctx.features:
            feature_line = "Features: " + ", ".join(item.text for item in ctx.features[:10])
            if len(ctx.features) > 10:
                feature_line += f" (+{len(ctx.features) - 10} more)"
            lines.append(feature_line)
        if ctx.constraints:
            lines.append("Constraints: " + ", ".join(item.text for item in ctx.constraints[:5]))
        return "\n".join(lines) + "\n"

    def serialize_prompt(self) -> str:
        """Render the full context as a prompt for a single agent session."""
        ctx = self._context
        sections = [f"# {ctx.project_name}"]
        if ctx.stack:
            sections.append("## Stack\n" + "\n".join(f"- {entry}" for entry in ctx.stack))
        for title, items in (
            ("Features", ctx.features),
            ("Constraints", ctx.constraints),
            ("Risks", ctx.risks),
        ):
            if items:
                sections.append(
                    f"## {title}\n"
                    + "\n".join(f"- [{item.priority.value}] {item.text}" for item in items)
                )
        return "\n\n".join(sections) + "\n"

    def add_message(self, from_role: str, to: str, content: str, type: str = "broadcast") -> None:
        """Record a team message (e.g. chat input from the CEO)."""
        self._messages.append(TeamMessage(from_role=from_role, to=to, content=content, type=type))

    @property
    def messages(self) -> list[TeamMessage]:
        return list(self._messages)

    def visible_messages(self, agent_id: str) -> list[TeamMessage]:
        rules = VISIBILITY.get(agent_id, DEFAULT_VISIBILITY)
        if rules.get("all"):
            return list(self._messages)
        allow = rules.get("allow", frozenset())
        deny = rules.get("deny", frozenset())
        visible = []
        for message in self._messages:
            if message.to in (f"@{agent_id}", "@all"):
                visible.append(message)
            elif message.type not in deny and message.type in allow:
                visible.append(message)
        return visible

    def add_agent_context(self, agent_id: str, content: str, category: str = "note") -> None:
        """Remember something an agent produced; older notes get compressed."""
        notes = self._agent_notes.setdefault(agent_id, [])
        notes.append(_Note(content=content, category=category))
        if len(notes) > MAX_AGENT_ENTRIES:
            self._compress(agent_id)

    def agent_notes(self, agent_id: str) -> list[str]:
        return [note.content for note in self._agent_notes.get(agent_id, [])]

    def agent_summary(self, agent_id: str) -> str:
        return self._summaries.get(agent_id, "")

    def _compress(self, agent_id: str) -> None:
        notes = self._agent_notes[agent_id]
        older, kept = notes[:-KEPT_AGENT_ENTRIES], notes[-KEPT_AGENT_ENTRIES:]
        summary = " | ".join(f"[{note.category}] {note.content[:100]}" for note in older)
        existing = self._summaries.get(agent_id)
        self._summaries[agent_id] = f"{existing}\n---\n{summary}" if existing else summary
        self._agent_notes[agent_id] = kept
        logger.debug("agent_context_compressed", agent_id=agent_id, compressed=len(older))

    def build_agent_context(self, agent_id: str, tier: ModelTier, task: Task) -> AgentContext:
        """Assemble an agent's context for a task within its tier budget.

        The project block is always included. The prior-context summary and
        the agent's own notes are added if they fit, then visible team
        messages newest first until the budget (minus a task reserve) is spent.
        """
        budget = TIER_BUDGETS.get(tier, TIER_BUDGETS[ModelTier.STANDARD])
        project_block = self.project_block()
        parts = [project_block]
        used = estimate_tokens(project_block)

        summary = self._summaries.get(agent_id)
        if summary and used + estimate_tokens(summary) <= budget:
            parts.append(f"\n## Prior Context Summary\n{summary}\n")
            used += estimate_tokens(summary)

        notes = self._agent_notes.get(agent_id, [])
        if notes:
            notes_block = "\n".join(f"- {note.content}" for note in notes)
            if used + estimate_tokens(notes_block) <= budget:
                parts.append(f"\n## Your Prior Notes\n{notes_block}\n")
                used += estimate_tokens(notes_block)

        task_context = task.description or task.title
        message_budget = max(0, budget - used - estimate_tokens(task_context) - TASK_RESERVE_TOKENS)
        lines: list[str] = []
        message_tokens = 0
        for message in reversed(self.visible_messages(agent_id)):
            line = f"[{message.from_role}→{message.to}] {message.content}\n"
            line_tokens = estimate_tokens(line)
            if message_tokens + line_tokens > message_budget:
                break
            lines.insert(0, line)
            message_tokens += line_tokens
        if lines:
            parts.append("\n## Team Communication\n" + "".join(lines))
            used += message_tokens

        return AgentContext(
            system_context="".join(parts),
            task_context=task_context,
            budget=budget,
            used=used,
        )

    def clear(self) -> None:
        """Drop everything held for the session."""
        self._context = ProjectContext()
        self._node_count = 0
        self._connection_count = 0
        self._messages.clear()
        self._agent_notes.clear()
        self._summaries.clear()
