"""Intake completeness scoring.

Pure functions over a ``MedicalRecord``; the instruction injector, the
termination detector and the API all read the same number within a turn.
"""

from pydantic import BaseModel

from intake.config import (
    COMPLETENESS_ALLERGIES_WEIGHT,
    COMPLETENESS_MEDICATIONS_WEIGHT,
    COMPLETENESS_PMH_WEIGHT,
)
from intake.models.agents import AgentRole
from intake.models.medical import SBAR, MedicalRecord


class CompletenessWeights(BaseModel):
    chief_complaint: int = 20
    hpi: int = 20
    records_check: int = 10
    medications: int = COMPLETENESS_MEDICATIONS_WEIGHT
    allergies: int = COMPLETENESS_ALLERGIES_WEIGHT
    past_medical_history: int = COMPLETENESS_PMH_WEIGHT
    family_history: int = 5
    social_history: int = 5
    clinical_handover: int = 10

    model_config = {"frozen": True}


DEFAULT_WEIGHTS = CompletenessWeights()

HPI_MIN_LENGTH = 50


def _present(value: str | None) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_sbar_complete(sbar: SBAR | None) -> bool:
    return sbar is not None and sbar.is_complete()


def calculate_completeness(record: MedicalRecord, weights: CompletenessWeights = DEFAULT_WEIGHTS) -> int:
    """Score how much of the intake has been collected, as an integer 0-100.

    Medications, allergies and past history only count once the records check
    is done, and each list counts only when it holds a non-blank entry.
    """
    score = 0

    if _present(record.chief_complaint):
        score += weights.chief_complaint
    if _present(record.hpi):
        score += weights.hpi

    if record.records_check_completed:
        score += weights.records_check
        for field in ("medications", "allergies", "past_medical_history"):
            if any(_present(item) for item in getattr(record, field)):
                score += getattr(weights, field)

    if _present(record.family_history):
        score += weights.family_history
    if _present(record.social_history):
        score += weights.social_history
    if is_sbar_complete(record.clinical_handover):
        score += weights.clinical_handover

    return max(0, min(100, int(round(score))))


def determine_agent(record: MedicalRecord) -> AgentRole:
    """Route purely from collected data: the first stage still missing input."""
    if not _present(record.chief_complaint):
        return AgentRole.TRIAGE
    if not _present(record.hpi) or len(record.hpi.strip()) < HPI_MIN_LENGTH:
        return AgentRole.CLINICAL_INVESTIGATOR
    if not record.records_check_completed:
        return AgentRole.RECORDS_CLERK
    has_history = bool(record.medications or record.allergies or record.past_medical_history)
    if not has_history and not record.history_check_completed:
        return AgentRole.HISTORY_SPECIALIST
    return AgentRole.HANDOVER_SPECIALIST


def is_intake_ready(record: MedicalRecord) -> bool:
    return (
        determine_agent(record) == AgentRole.HANDOVER_SPECIALIST
        and _present(record.chief_complaint)
        and _present(record.hpi)
        and len(record.hpi.strip()) >= HPI_MIN_LENGTH
        and record.records_check_completed
    )
