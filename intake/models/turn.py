from typing import Literal

from pydantic import BaseModel, Field

from intake.models.agents import AgentRole
from intake.models.medical import CamelModel, MedicalRecord
from intake.models.tracking import TrackingState
from intake.models.triage import EmergencySignal, TerminationDecision


class ChatMessage(CamelModel):
    id: str | None = None
    role: Literal["user", "model", "doctor"]
    text: str = ""
    images: list[str] = Field(default_factory=list)
    active_agent: AgentRole | None = None
    timestamp: str | None = None


class TurnRequest(CamelModel):
    history: list[ChatMessage]
    medical_data: MedicalRecord
    mode: Literal["patient", "doctor"]
    tracking_state: TrackingState | None = None
    emergency_signal: EmergencySignal | None = None


class TurnResponse(CamelModel):
    reply: str
    updated_data: MedicalRecord
    active_agent: AgentRole
    tracking_state: TrackingState
    was_recovered: bool = False
    termination: TerminationDecision | None = None


class ErrorEnvelope(BaseModel):
    error: str
    details: str


class SessionCreate(BaseModel):
    pass


class SessionMessageCreate(CamelModel):
    content: str
    images: list[str] = Field(default_factory=list)
    client_message_id: str | None = None


class SessionResponse(CamelModel):
    id: str
    created_at: str
    status: str
    medical_data: MedicalRecord
    completeness: int
    tracking_state: TrackingState
    updated_at: str | None = None


class ExchangeResponse(CamelModel):
    """Stored user message and the agent reply it produced."""

    user_message: ChatMessage
    ai_message: ChatMessage
    medical_data: MedicalRecord
    active_agent: AgentRole
    completeness: int
    duplicate: bool = False
