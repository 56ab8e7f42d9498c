from enum import Enum


class AgentRole(str, Enum):
    """Intake agents, declared in the order a conversation moves through them."""

    TRIAGE = "Triage"
    CLINICAL_INVESTIGATOR = "ClinicalInvestigator"
    RECORDS_CLERK = "RecordsClerk"
    HISTORY_SPECIALIST = "HistorySpecialist"
    HANDOVER_SPECIALIST = "HandoverSpecialist"


class AgentTransitionError(ValueError):
    """Raised for a role outside the fixed set or a move against the agent order."""


AGENT_ORDER: tuple[AgentRole, ...] = tuple(AgentRole)

AGENT_TO_STAGE: dict[AgentRole, str] = {
    AgentRole.TRIAGE: "triage",
    AgentRole.CLINICAL_INVESTIGATOR: "symptoms",
    AgentRole.RECORDS_CLERK: "records",
    AgentRole.HISTORY_SPECIALIST: "history",
    AgentRole.HANDOVER_SPECIALIST: "review",
}

STAGES: tuple[str, ...] = tuple(AGENT_TO_STAGE.values())

TERMINAL_AGENT = AgentRole.HANDOVER_SPECIALIST


def stage_for(role: AgentRole) -> str:
    return AGENT_TO_STAGE[AgentRole(role)]


def role_index(role: AgentRole) -> int:
    return AGENT_ORDER.index(AgentRole(role))


def next_agent(role: AgentRole) -> AgentRole:
    """Return the agent after ``role``; the handover agent loops on itself."""
    idx = role_index(role)
    return AGENT_ORDER[min(idx + 1, len(AGENT_ORDER) - 1)]


def is_forward_or_same(current: AgentRole, proposed: AgentRole) -> bool:
    return role_index(proposed) >= role_index(current)


def parse_role(value: object) -> AgentRole:
    if isinstance(value, AgentRole):
        return value
    if not isinstance(value, str) or not value.strip():
        raise AgentTransitionError(f"Missing agent role: {value!r}")
    try:
        return AgentRole(value.strip())
    except ValueError:
        raise AgentTransitionError(f"Unknown agent role: {value!r}") from None
