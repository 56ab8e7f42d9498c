import logging
import re

from intake.config import COMPLETENESS_WRAP_UP_THRESHOLD, COMPLETION_PHRASE_THRESHOLD
from intake.models.agents import AgentRole
from intake.models.triage import TerminationDecision, TerminationReason

logger = logging.getLogger(__name__)

COMPLETION_PHRASES: tuple[str, ...] = (
    "that's all",
    "thats all",
    "that is all",
    "nothing else",
    "no more",
    "i'm done",
    "im done",
    "that's it",
    "thats it",
    "no other",
    "nothing more",
    "i think that's everything",
    "that covers it",
    "i'm healthy",
    "im healthy",
    "no issues",
    "no problems",
    "no concerns",
    "that's everything",
    "thats everything",
)

EXPLICIT_FINISH_PHRASES: tuple[str, ...] = (
    "can we wrap up",
    "i want to book",
    "let's book",
    "lets book",
    "ready to book",
    "finish up",
    "wrap this up",
    "i'm ready",
    "im ready",
    "book now",
    "schedule now",
    "can i book",
    "want to schedule",
    "ready for appointment",
)

UNCERTAINTY_PHRASES: tuple[str, ...] = (
    "i don't know",
    "i dont know",
    "not sure",
    "unsure",
    "no idea",
    "can't remember",
    "cant remember",
    "i forget",
    "maybe",
    "possibly",
    "i think so",
    "not certain",
    "hard to say",
    "difficult to say",
)

NEGATIVE_RESPONSES: tuple[str, ...] = (
    "no",
    "none",
    "nothing",
    "nope",
    "n/a",
    "na",
    "not really",
    "not that i know of",
    "negative",
    "no i don't",
    "no i dont",
    "i don't think so",
    "i dont think so",
    "not at all",
    "i don't have any",
    "i dont have any",
    "don't have any",
    "dont have any",
    "i have none",
    "have none",
    "i have no",
    "have no",
    "i don't have",
    "i dont have",
    "don't have",
    "dont have",
    "proceed",
    "skip",
    "move on",
    "next",
    "continue",
    "no records",
    "no documents",
    "no files",
    "no photos",
    "nothing to upload",
    "nothing to share",
)


def _normalise(text: str | None) -> str:
    if not text:
        return ""
    # Curly apostrophes from mobile keyboards
    return re.sub(r"\s+", " ", text.replace("’", "'").lower()).strip()


def matches_completion_phrase(text: str | None, phrases: tuple[str, ...] | None = None) -> bool:
    lowered = _normalise(text)
    if not lowered:
        return False
    phrases = phrases if phrases is not None else COMPLETION_PHRASES + EXPLICIT_FINISH_PHRASES
    return any(phrase in lowered for phrase in phrases)


def is_uncertain_response(text: str | None) -> bool:
    lowered = _normalise(text)
    return any(phrase in lowered for phrase in UNCERTAINTY_PHRASES)


def is_negative_response(text: str | None) -> bool:
    """True when the message is, or opens with, a plain negative answer."""
    lowered = _normalise(text)
    if not lowered:
        return False
    return any(
        lowered == phrase or lowered.startswith((phrase + " ", phrase + ",", phrase + "."))
        for phrase in NEGATIVE_RESPONSES
    )


def detect_termination_signal(
    utterance: str | None,
    active_agent: AgentRole,
    ai_message_count: int,
    completeness: int,
    has_chief_complaint: bool,
    has_hpi: bool,
    phrases: tuple[str, ...] | None = None,
) -> TerminationDecision:
    """Decide whether the conversation should be handed over now.

    Rules, first match wins:

    1. A completion phrase with either enough completeness or both essentials
       collected hands over with reason ``completion_phrase``.
    2. Without a completion phrase, completeness at the wrap-up threshold hands
       over with reason ``completeness_threshold`` unless the handover agent is
       already active.
    3. Otherwise the conversation continues with the current agent.
    """
    factors = [
        f"completeness={completeness}",
        f"ai_message_count={ai_message_count}",
        f"chief_complaint={'yes' if has_chief_complaint else 'no'}",
        f"hpi={'yes' if has_hpi else 'no'}",
    ]
    said_done = matches_completion_phrase(utterance, phrases)

    if said_done:
        has_essentials = has_chief_complaint and has_hpi
        if completeness >= COMPLETION_PHRASE_THRESHOLD or has_essentials:
            logger.info(
                "Termination by completion phrase (completeness=%d, agent=%s)",
                completeness, active_agent.value,
            )
            return TerminationDecision(
                should_terminate=True,
                reason=TerminationReason.COMPLETION_PHRASE,
                details="Patient indicated they have nothing more to add",
                factors=factors + ["completion_phrase"],
                target_agent=AgentRole.HANDOVER_SPECIALIST,
                confidence=0.9,
            )
    elif (
        completeness >= COMPLETENESS_WRAP_UP_THRESHOLD
        and active_agent != AgentRole.HANDOVER_SPECIALIST
    ):
        logger.info("Termination by completeness threshold (completeness=%d)", completeness)
        return TerminationDecision(
            should_terminate=True,
            reason=TerminationReason.COMPLETENESS_THRESHOLD,
            details=f"Intake is {completeness}% complete",
            factors=factors,
            target_agent=AgentRole.HANDOVER_SPECIALIST,
            confidence=0.8,
        )

    return TerminationDecision(
        should_terminate=False,
        reason=TerminationReason.NONE,
        details="Conversation continues",
        factors=factors,
        target_agent=active_agent,
        confidence=1.0,
    )
