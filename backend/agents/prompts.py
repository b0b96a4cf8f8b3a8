"""Prompt templates for planning and task turns.

- PLANNER_PROMPT: Asks the planner for a JSON plan over the team roster
- get_planning_prompt: Fills the planner prompt with context and roster
- get_task_prompt: Prompt for one agent working on one task
"""

from collections.abc import Iterable

from agents.registry import AgentRoleEntry
from models.schemas import Task

PLANNER_PROMPT = """\
You are the COO of a virtual software team. Turn the project below into an \
execution plan for the team.

{context}

## Team
{roster}

## Output Format
Respond with a single JSON object and nothing else:
{{
  "phases": [
    {{
      "name": "Phase name",
      "routingTier": "flash" | "standard" | "opus",
      "rationale": "Why this phase runs at this tier",
      "milestones": [
        {{
          "title": "Milestone title",
          "tasks": [
            {{
              "title": "Task title",
              "assignedTo": "agent id from the team list",
              "tier": "flash" | "standard" | "opus",
              "priority": "critical" | "high" | "medium" | "low",
              "description": "What done looks like",
              "requiresConfirmation": false
            }}
          ]
        }}
      ]
    }}
  ],
  "summary": "One paragraph overview",
  "estimatedRounds": 6
}}

## Rules
- Assign every task to exactly one agent id from the team list. Never assign the CEO.
- Set requiresConfirmation for irreversible or high-impact work.
- Order phases so that setup comes first and QA/security review comes last.
"""


def format_roster(entries: Iterable[AgentRoleEntry]) -> str:
    return "\n".join(
        f"- {entry.id}: {entry.label} ({entry.tier.value}"
        f"{', human, does not execute' if entry.is_human else ''})"
        for entry in entries
    )


def get_planning_prompt(context: str, roster: Iterable[AgentRoleEntry]) -> str:
    """Build the planner prompt for a serialized project context."""
    return PLANNER_PROMPT.format(context=context.strip(), roster=format_roster(roster))


def get_task_prompt(agent: AgentRoleEntry, task: Task, system_context: str) -> str:
    """Build the prompt for one agent working on one task.

    Args:
        agent: The registry entry executing the task
        task: The task to carry out
        system_context: Context window assembled by the ContextManager

    Returns:
        The complete task prompt
    """
    lines = [
        f"You are the {agent.label} on a virtual software team.",
        "",
        system_context.strip(),
        "",
        f"## Your Task ({task.phase})",
        task.title,
    ]
    if task.description:
        lines += ["", task.description]
    lines += ["", "Report what you did and anything the team should know."]
    return "\n".join(lines)
