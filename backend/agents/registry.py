"""Static roster of agent roles.

The roster is built once at import time and never mutated. It is used both to
populate observer UIs and to validate task assignments coming out of a Plan.
"""

from dataclasses import dataclass, field

import structlog

from errors import ValidationError
from models.schemas import ModelTier

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AgentRoleEntry:
    """One agent role of the virtual team.

    Attributes:
        id: Stable identifier used in task assignments (e.g. "backend")
        label: Display label (e.g. "Backend")
        tier: Capability tier the agent runs at
        is_human: True for the human principal, who never executes tasks
        capabilities: Free-form capability tags used for lookups
        reports_to: Id of the role this one reports to
    """

    id: str
    label: str
    tier: ModelTier
    is_human: bool = False
    capabilities: tuple[str, ...] = field(default_factory=tuple)
    reports_to: str | None = None


DEFAULT_ROSTER: tuple[AgentRoleEntry, ...] = (
    AgentRoleEntry("ceo", "CEO", ModelTier.STANDARD, True, ("approve", "reject", "escalate")),
    AgentRoleEntry("coo", "COO", ModelTier.STANDARD, False, ("plan", "assign", "sequence", "report"), "ceo"),
    AgentRoleEntry("cto", "CTO", ModelTier.OPUS, False, ("architecture", "review", "approve", "techDecision"), "ceo"),
    AgentRoleEntry("cfo", "CFO", ModelTier.STANDARD, False, ("budget", "costAnalysis", "tierRecommend"), "cto"),
    AgentRoleEntry("creative", "Creative", ModelTier.STANDARD, False, ("design", "copy", "brand"), "coo"),
    AgentRoleEntry("frontend", "Frontend", ModelTier.STANDARD, False, ("code", "ui", "design", "test"), "coo"),
    AgentRoleEntry("backend", "Backend", ModelTier.STANDARD, False, ("code", "api", "data", "auth", "test"), "cto"),
    AgentRoleEntry("devops", "DevOps", ModelTier.STANDARD, False, ("cicd", "deploy", "infra", "monitor"), "coo"),
    AgentRoleEntry("qa-tester", "QA Tester", ModelTier.STANDARD, False, ("test", "coverage", "automation"), "coo"),
    AgentRoleEntry("deep-researcher", "Deep Researcher", ModelTier.STANDARD, False, ("research", "document", "brief"), "cto"),
    AgentRoleEntry("devils-advocate", "Devil's Advocate", ModelTier.STANDARD, False, ("review", "challenge", "qualityGate"), "coo"),
    AgentRoleEntry("sentinel", "Sentinel", ModelTier.OPUS, False, ("securityAudit", "veto", "complianceCheck"), "cto"),
    AgentRoleEntry("documenter", "Documenter", ModelTier.FLASH, False, ("document", "changelog", "retrospective"), "coo"),
    AgentRoleEntry("token-auditor", "Token Auditor", ModelTier.FLASH, False, ("tokenTrack", "budgetAlert"), "cfo"),
    AgentRoleEntry("api-cost-auditor", "API Cost Auditor", ModelTier.FLASH, False, ("costTrack", "anomalyDetect"), "cfo"),
    AgentRoleEntry("project-auditor", "Project Auditor", ModelTier.FLASH, False, ("retrospective", "healthCheck", "actionTrack"), "coo"),
)


class AgentRegistry:
    """Read-only lookup over the agent roster."""

    def __init__(self, roster: tuple[AgentRoleEntry, ...] = DEFAULT_ROSTER) -> None:
        self._entries: dict[str, AgentRoleEntry] = {entry.id: entry for entry in roster}

    def get_all(self) -> list[AgentRoleEntry]:
        """Return the complete roster, human principal included, in roster order."""
        return list(self._entries.values())

    def get(self, agent_id: str) -> AgentRoleEntry | None:
        return self._entries.get(agent_id)

    def ids(self) -> set[str]:
        return set(self._entries)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._entries

    def validate_assignment(self, agent_id: str) -> AgentRoleEntry:
        """Resolve an assignment to an executable entry.

        Raises:
            ValidationError: If the id is unknown or names the human principal.
        """
        entry = self._entries.get(agent_id)
        if entry is None:
            raise ValidationError(f"Unknown agent id '{agent_id}'", agent_id=agent_id)
        if entry.is_human:
            raise ValidationError(
                f"Agent '{agent_id}' is a human role and cannot execute tasks",
                agent_id=agent_id,
            )
        return entry

    def get_by_tier(self, tier: ModelTier | str) -> list[AgentRoleEntry]:
        return [entry for entry in self._entries.values() if entry.tier == tier]

    def get_executable(self) -> list[AgentRoleEntry]:
        return [entry for entry in self._entries.values() if not entry.is_human]

    def get_direct_reports(self, agent_id: str) -> list[AgentRoleEntry]:
        return [entry for entry in self._entries.values() if entry.reports_to == agent_id]

    def get_by_capability(self, capability: str) -> list[AgentRoleEntry]:
        return [entry for entry in self._entries.values() if capability in entry.capabilities]

    def get_org_chart(self) -> dict[str, dict[str, object]]:
        """Adjacency view of the reporting structure."""
        return {
            entry.id: {
                "label": entry.label,
                "tier": entry.tier.value,
                "reportsTo": entry.reports_to,
                "directReports": [report.id for report in self.get_direct_reports(entry.id)],
            }
            for entry in self._entries.values()
        }

    def get_stats(self) -> dict[str, object]:
        return {
            "total": len(self._entries),
            "executable": len(self.get_executable()),
            "byTier": {tier.value: len(self.get_by_tier(tier)) for tier in ModelTier},
        }


_registry: AgentRegistry | None = None


def get_agent_registry() -> AgentRegistry:
    """Get the process-wide registry."""
    global _registry
    if _registry is None:
        _registry = AgentRegistry()
        logger.debug("agent_registry_initialized", agents=len(_registry.get_all()))
    return _registry
