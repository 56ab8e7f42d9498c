import logging

from intake.models.medical import SBAR, MedicalRecord
from intake.services.llm import LLMClient, get_llm_client

logger = logging.getLogger(__name__)

HANDOVER_PROMPT = """You are a senior attending clinician writing a handover for a colleague.

Given the intake data below, write an SBAR summary:
- situation: the chief complaint and why the patient is presenting, one sentence.
- background: relevant history, medications and allergies.
- assessment: the working impression from the history of present illness.
- recommendation: what the receiving clinician should do next.

Each field is 1-3 sentences of plain text. Do not invent findings."""


def _join(items: list[str], empty: str) -> str:
    return ", ".join(items) if items else empty


def build_fallback_handover(record: MedicalRecord) -> SBAR:
    """Deterministic SBAR assembled from the collected fields."""
    complaint = record.chief_complaint or "Not stated"
    background = (
        f"Medications: {_join(record.medications, 'none reported')}. "
        f"Allergies: {_join(record.allergies, 'none reported')}. "
        f"Past history: {_join(record.past_medical_history, 'none reported')}."
    )
    if record.social_history:
        background += f" Social: {record.social_history}."
    if record.family_history:
        background += f" Family: {record.family_history}."

    return SBAR(
        situation=f"Patient presenting with {complaint}.",
        background=background,
        assessment=record.hpi or "History of present illness not collected.",
        recommendation="Review intake with the patient at consultation and confirm findings.",
    )


async def generate_clinical_handover(record: MedicalRecord, client: LLMClient | None = None) -> SBAR:
    """Write an SBAR handover upstream, falling back to the deterministic one."""
    client = client or get_llm_client()
    if not client.available() or client.provider == "dummy":
        return build_fallback_handover(record)

    try:
        sbar = await client.generate_json(
            system=HANDOVER_PROMPT,
            user=record.model_dump_json(by_alias=True, indent=2),
            response_model=SBAR,
        )
    except Exception as e:
        logger.error("Clinical handover generation failed: %s", e)
        return build_fallback_handover(record)

    if not sbar.is_complete():
        logger.warning("Generated handover incomplete; using fallback")
        return build_fallback_handover(record)
    return sbar
