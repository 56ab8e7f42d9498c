from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from intake.models.agents import AgentRole


class BookingStatus(str, Enum):
    COLLECTING = "collecting"
    READY = "ready"
    BOOKED = "booked"


_BOOKING_ORDER = [BookingStatus.COLLECTING, BookingStatus.READY, BookingStatus.BOOKED]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SBAR(CamelModel):
    """Situation / Background / Assessment / Recommendation handover summary."""

    situation: str | None = None
    background: str | None = None
    assessment: str | None = None
    recommendation: str | None = None

    def is_complete(self) -> bool:
        return all(
            isinstance(value, str) and value.strip()
            for value in (self.situation, self.background, self.assessment, self.recommendation)
        )


class MedicalRecord(CamelModel):
    """Medical data accumulated over one intake conversation."""

    chief_complaint: str | None = None
    hpi: str | None = None
    medical_records: list[str] = Field(default_factory=list)
    records_check_completed: bool = False
    history_check_completed: bool = False
    medications: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    past_medical_history: list[str] = Field(default_factory=list)
    family_history: str | None = None
    social_history: str | None = None
    clinical_handover: SBAR | None = None
    ucg_recommendations: str | None = None
    booking_status: BookingStatus | None = BookingStatus.COLLECTING
    current_agent: AgentRole = AgentRole.TRIAGE


def _as_text_list(value: object) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return None


class MedicalDataUpdate(CamelModel):
    """Partial record proposed by the generator; every field is optional."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    chief_complaint: str | None = None
    hpi: str | None = None
    medical_records: list[str] | None = None
    records_check_completed: bool | None = None
    history_check_completed: bool | None = None
    medications: list[str] | None = None
    allergies: list[str] | None = None
    past_medical_history: list[str] | None = None
    family_history: str | None = None
    social_history: str | None = None
    clinical_handover: SBAR | None = None
    ucg_recommendations: str | None = None
    booking_status: BookingStatus | None = None

    @field_validator(
        "medical_records", "medications", "allergies", "past_medical_history", mode="before"
    )
    @classmethod
    def _coerce_lists(cls, value: object) -> list[str] | None:
        return _as_text_list(value)

    @field_validator(
        "chief_complaint", "hpi", "family_history", "social_history", "ucg_recommendations",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: object) -> str | None:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)):
            return str(value)
        return None

    @field_validator("clinical_handover", mode="before")
    @classmethod
    def _coerce_handover(cls, value: object) -> object:
        return value if isinstance(value, (dict, SBAR)) else None

    @field_validator("booking_status", mode="before")
    @classmethod
    def _coerce_booking(cls, value: object) -> object:
        if isinstance(value, str) and value.strip().lower() in {s.value for s in BookingStatus}:
            return value.strip().lower()
        return None


def _filled(value: str | None) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _union(existing: list[str], incoming: list[str] | None) -> list[str]:
    combined = list(existing)
    for item in incoming or []:
        if item not in combined:
            combined.append(item)
    return combined


def merge_medical_data(current: MedicalRecord, update: MedicalDataUpdate | dict | None) -> MedicalRecord:
    """Fold a partial update into the record without ever emptying a field.

    Text fields take non-blank updates, lists grow by union, flags only turn on,
    the handover summary is replaced only by a more complete one and booking
    status only moves forward. The active agent is left alone.
    """
    if update is None:
        return current
    if isinstance(update, dict):
        update = MedicalDataUpdate.model_validate(update)

    merged = current.model_copy(deep=True)

    for field in ("chief_complaint", "hpi", "family_history", "social_history", "ucg_recommendations"):
        value = getattr(update, field)
        if _filled(value):
            setattr(merged, field, value.strip())

    for field in ("medical_records", "medications", "allergies", "past_medical_history"):
        setattr(merged, field, _union(getattr(merged, field), getattr(update, field)))

    for field in ("records_check_completed", "history_check_completed"):
        if getattr(update, field):
            setattr(merged, field, True)

    incoming = update.clinical_handover
    if incoming is not None:
        existing = merged.clinical_handover
        if existing is None or incoming.is_complete():
            merged.clinical_handover = incoming
        else:
            # Fill only the blank parts of a partial summary
            filled = existing.model_copy()
            for part in ("situation", "background", "assessment", "recommendation"):
                if not _filled(getattr(filled, part)) and _filled(getattr(incoming, part)):
                    setattr(filled, part, getattr(incoming, part))
            merged.clinical_handover = filled

    if update.booking_status is not None:
        current_rank = _BOOKING_ORDER.index(merged.booking_status) if merged.booking_status else -1
        if _BOOKING_ORDER.index(update.booking_status) > current_rank:
            merged.booking_status = update.booking_status

    return merged
