"""Tracking state helpers and prompt instruction injection.

Every helper returns a new ``TrackingState``; nothing here keeps state between
calls.
"""

import logging
import re
from collections.abc import Iterable

from intake.config import (
    COMPLETENESS_WRAP_UP_THRESHOLD,
    FOLLOW_UP_LIMIT,
    MESSAGE_HARD_LIMIT,
    MESSAGE_SOFT_LIMIT,
)
from intake.models.agents import AgentRole, stage_for
from intake.models.medical import MedicalRecord
from intake.models.tracking import TrackingState
from intake.models.turn import ChatMessage
from intake.services.completeness import calculate_completeness

logger = logging.getLogger(__name__)

NO_TOPICS_SENTINEL = "None yet - this is the start of the conversation"

PLACEHOLDERS = ("answeredQuestions", "followUpCount", "aiMessageCount", "completeness")
_PLACEHOLDER_RE = re.compile(r"\{(" + "|".join(PLACEHOLDERS) + r")\}")

# topic -> word patterns that mark it as discussed
TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "fever": (r"fever", r"temperature", r"hot", r"burning up"),
    "chills": (r"chills", r"shivering", r"cold"),
    "cough": (r"cough", r"coughing"),
    "congestion": (r"runny nose", r"stuffy", r"congestion", r"blocked nose"),
    "headache": (r"headaches?", r"head pain", r"head hurts"),
    "fatigue": (r"tired", r"fatigue", r"exhausted", r"weak"),
    "nausea": (r"nausea", r"nauseous", r"sick to (?:my )?stomach"),
    "pain": (r"pain", r"hurts?", r"aches?", r"sore"),
    "rash": (r"rash", r"skin", r"spots", r"bumps"),
    "swelling": (r"swelling", r"swollen", r"lumps", r"lymph nodes"),
    "medications": (r"medications?", r"medicines?", r"pills"),
    "allergies": (r"allerg\w*",),
    "smoking": (r"smoke", r"smoking", r"tobacco"),
    "alcohol": (r"drinks?", r"drinking", r"alcohol"),
}

_TOPIC_PATTERNS = {
    topic: re.compile(r"\b(?:" + "|".join(words) + r")\b", re.IGNORECASE)
    for topic, words in TOPIC_KEYWORDS.items()
}


def get_follow_up_count(state: TrackingState, role: AgentRole | None = None) -> int:
    stage = stage_for(role or state.current_agent)
    return state.follow_up_counts.get(stage, 0)


def has_reached_follow_up_limit(state: TrackingState, role: AgentRole | None = None) -> bool:
    return get_follow_up_count(state, role) >= FOLLOW_UP_LIMIT


def increment_follow_up(state: TrackingState, role: AgentRole | None = None) -> TrackingState:
    stage = stage_for(role or state.current_agent)
    counts = dict(state.follow_up_counts)
    counts[stage] = counts.get(stage, 0) + 1
    return state.model_copy(update={"follow_up_counts": counts})


def reset_follow_up(state: TrackingState, role: AgentRole | None = None) -> TrackingState:
    stage = stage_for(role or state.current_agent)
    counts = dict(state.follow_up_counts)
    counts[stage] = 0
    return state.model_copy(update={"follow_up_counts": counts})


def extract_answered_topics(text: str | None) -> list[str]:
    """Topics the patient touched on in one message, negated mentions included."""
    if not text:
        return []
    return [topic for topic, pattern in _TOPIC_PATTERNS.items() if pattern.search(text)]


def has_new_information(state: TrackingState, text: str | None) -> bool:
    return any(topic not in state.answered_topics for topic in extract_answered_topics(text))


def mark_topics_answered(state: TrackingState, topics: Iterable[str]) -> TrackingState:
    merged = list(state.answered_topics)
    for topic in topics:
        topic = topic.strip()
        if topic and topic not in merged:
            merged.append(topic)
    return state.model_copy(update={"answered_topics": tuple(merged)})


def format_answered_topics(topics: Iterable[str]) -> str:
    lines = [f"• {_neutralise(topic)}" for topic in topics if topic]
    if not lines:
        return NO_TOPICS_SENTINEL
    return "\n".join(lines)


def _neutralise(text: str) -> str:
    # Topic text must not reintroduce a placeholder token after substitution.
    return _PLACEHOLDER_RE.sub(lambda match: match.group(1), text)


def build_dynamic_instructions(state: TrackingState) -> str:
    """Directive block appended to the agent prompt, or "" when nothing applies."""
    follow_ups = get_follow_up_count(state)
    messages = state.ai_message_count
    directives: list[str] = []

    if follow_ups >= FOLLOW_UP_LIMIT:
        directives.append(
            f"⚠️ FOLLOW-UP LIMIT REACHED ({follow_ups}/{FOLLOW_UP_LIMIT}) - You MUST wrap up this topic NOW. "
            "Batch any remaining questions into ONE final message, then move to the next stage."
        )
    elif follow_ups == FOLLOW_UP_LIMIT - 1:
        directives.append(
            f"📝 Follow-up count: {follow_ups}/{FOLLOW_UP_LIMIT} - "
            "You have ONE more follow-up allowed on this topic."
        )

    if messages > MESSAGE_HARD_LIMIT:
        directives.append("🚨 MESSAGE LIMIT EXCEEDED - Transition to HandoverSpecialist IMMEDIATELY.")
    elif messages > MESSAGE_SOFT_LIMIT:
        directives.append("⏰ Approaching message limit - Offer to conclude the intake.")

    if (
        state.completeness >= COMPLETENESS_WRAP_UP_THRESHOLD
        and state.current_agent != AgentRole.HANDOVER_SPECIALIST
    ):
        directives.append(
            f"✅ Intake is {COMPLETENESS_WRAP_UP_THRESHOLD}%+ complete - "
            "Offer to wrap up and proceed to booking."
        )

    if not directives:
        return ""
    return "\n**DYNAMIC INSTRUCTIONS:**\n" + "\n".join(directives) + "\n"


def inject_tracking_state(template: str, state: TrackingState) -> str:
    values = {
        "answeredQuestions": format_answered_topics(state.answered_topics),
        "followUpCount": f"{get_follow_up_count(state)}/{FOLLOW_UP_LIMIT}",
        "aiMessageCount": f"{state.ai_message_count}/{MESSAGE_HARD_LIMIT}",
        "completeness": f"{state.completeness}%",
    }
    # Single pass, so substituted values are never rescanned.
    rendered = _PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], template)
    return rendered + build_dynamic_instructions(state)


def derive_tracking_state(messages: Iterable[ChatMessage], record: MedicalRecord) -> TrackingState:
    """Rebuild tracking state by replaying the stored conversation.

    Each stored agent message carries the agent that was active after its
    turn, so a change of agent means the destination stage started over and a
    repeat means one more follow-up in that stage.
    """
    state = TrackingState.initial()
    previous = AgentRole.TRIAGE
    for message in messages:
        if message.role == "user":
            state = mark_topics_answered(state, extract_answered_topics(message.text))
            continue
        agent = message.active_agent or previous
        if agent != previous:
            state = reset_follow_up(state, agent)
        else:
            state = increment_follow_up(state, agent)
        state = state.model_copy(update={"ai_message_count": state.ai_message_count + 1})
        previous = agent

    return state.model_copy(
        update={
            "current_agent": record.current_agent,
            "completeness": calculate_completeness(record),
        }
    )
