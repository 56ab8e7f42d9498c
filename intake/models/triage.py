from enum import Enum

from pydantic import BaseModel, Field

from intake.models.agents import AgentRole
from intake.models.medical import CamelModel


class TerminationReason(str, Enum):
    COMPLETION_PHRASE = "completion_phrase"
    COMPLETENESS_THRESHOLD = "completeness_threshold"
    NONE = "none"


class TerminationDecision(CamelModel):
    should_terminate: bool
    reason: TerminationReason = TerminationReason.NONE
    details: str = ""
    factors: list[str] = Field(default_factory=list)
    target_agent: AgentRole
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class TriageDecisionKind(str, Enum):
    EMERGENCY = "emergency"
    AGENT_ASSISTED = "agent-assisted"
    DIRECT_TO_DIAGNOSIS = "direct-to-diagnosis"


class TriageDecision(CamelModel):
    """Routing decision produced by the external vitals analyzer."""

    decision: TriageDecisionKind
    reason: str = ""
    factors: list[str] = Field(default_factory=list)
    target_agent: AgentRole | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class EmergencySignal(BaseModel):
    """Precomputed vitals assessment; this service only consumes it."""

    is_emergency: bool = Field(default=False, alias="isEmergency")
    severity: str | None = None
    indicators: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @classmethod
    def from_triage(cls, decision: TriageDecision) -> "EmergencySignal":
        return cls(
            is_emergency=decision.decision == TriageDecisionKind.EMERGENCY,
            severity="critical" if decision.decision == TriageDecisionKind.EMERGENCY else None,
            indicators=list(decision.factors),
        )
