from pydantic import ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from intake.models.agents import STAGES, AgentRole
from intake.models.medical import CamelModel


class TrackingState(CamelModel):
    """Per-conversation progress counters.

    Passed into and returned from every turn; never stored on its own since it
    can be rebuilt from the message history and the medical record.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    follow_up_counts: dict[str, int] = Field(default_factory=dict)
    answered_topics: tuple[str, ...] = ()
    ai_message_count: int = Field(default=0, ge=0)
    completeness: int = Field(default=0, ge=0, le=100)
    current_agent: AgentRole = AgentRole.TRIAGE

    @field_validator("follow_up_counts")
    @classmethod
    def _non_negative_counts(cls, value: dict[str, int]) -> dict[str, int]:
        return {stage: max(0, int(count)) for stage, count in value.items()}

    @field_validator("answered_topics", mode="before")
    @classmethod
    def _distinct_topics(cls, value: object) -> tuple[str, ...]:
        if value is None:
            return ()
        seen: list[str] = []
        for topic in value:
            topic = str(topic).strip()
            if topic and topic not in seen:
                seen.append(topic)
        return tuple(seen)

    @classmethod
    def initial(cls, agent: AgentRole = AgentRole.TRIAGE) -> "TrackingState":
        return cls(follow_up_counts={stage: 0 for stage in STAGES}, current_agent=agent)
