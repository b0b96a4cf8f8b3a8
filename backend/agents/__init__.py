"""Planning agents, the agent roster and per-agent context.

This module exports the key components needed to plan and staff a session:
- AgentRegistry: Fixed roster of agent roles used to validate assignments
- ContextManager: Project context slicing and per-agent context windows
- PlannerAgent / create_local_plan: AI-generated and deterministic plans
- Prompt helpers and response parsing utilities
"""

from agents.context import AgentContext, ContextManager, estimate_tokens
from agents.planner import PlannerAgent, create_local_plan, parse_plan
from agents.prompts import get_planning_prompt, get_task_prompt
from agents.registry import (
    DEFAULT_ROSTER,
    AgentRegistry,
    AgentRoleEntry,
    get_agent_registry,
)
from agents.utils import (
    build_cost_record,
    extract_json_from_response,
    format_elapsed,
)

__all__ = [
    # Registry
    "AgentRegistry",
    "AgentRoleEntry",
    "DEFAULT_ROSTER",
    "get_agent_registry",
    # Context
    "AgentContext",
    "ContextManager",
    "estimate_tokens",
    # Planning
    "PlannerAgent",
    "create_local_plan",
    "parse_plan",
    # Prompts
    "get_planning_prompt",
    "get_task_prompt",
    # Utils
    "build_cost_record",
    "extract_json_from_response",
    "format_elapsed",
]
