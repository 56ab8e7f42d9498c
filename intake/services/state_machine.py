"""Active-agent transitions for one conversation turn."""

import logging
from dataclasses import dataclass
from enum import Enum

from intake.config import FOLLOW_UP_LIMIT, MESSAGE_HARD_LIMIT
from intake.models.agents import (
    AgentRole,
    AgentTransitionError,
    is_forward_or_same,
    next_agent,
    parse_role,
    stage_for,
)
from intake.models.tracking import TrackingState
from intake.models.triage import EmergencySignal, TerminationDecision
from intake.services.tracking import get_follow_up_count, increment_follow_up, reset_follow_up

logger = logging.getLogger(__name__)

# Agent that owns the conversation once the vitals analyzer flags an emergency
EMERGENCY_AGENT = AgentRole.HANDOVER_SPECIALIST


class TransitionSource(str, Enum):
    EMERGENCY = "emergency"
    TERMINATION = "termination"
    MESSAGE_LIMIT = "message_limit"
    FOLLOW_UP_LIMIT = "follow_up_limit"
    GENERATOR = "generator"
    HOLD = "hold"


@dataclass(frozen=True)
class TransitionResult:
    previous_agent: AgentRole
    agent: AgentRole
    source: TransitionSource
    tracking: TrackingState
    rejected_proposal: str | None = None
    error: str | None = None

    @property
    def stage_changed(self) -> bool:
        return stage_for(self.previous_agent) != stage_for(self.agent)


def validate_proposed_agent(current: AgentRole, proposed: object) -> AgentRole:
    """Return the proposed role if it is known and not a step backwards."""
    role = parse_role(proposed)
    if not is_forward_or_same(current, role):
        raise AgentTransitionError(
            f"Backward transition {current.value} -> {role.value} rejected"
        )
    return role


def _pick_target(
    state: TrackingState,
    proposed: object,
    termination: TerminationDecision | None,
    emergency: EmergencySignal | None,
    new_information: bool,
) -> tuple[AgentRole, TransitionSource, str | None]:
    current = state.current_agent

    if emergency is not None and emergency.is_emergency:
        return EMERGENCY_AGENT, TransitionSource.EMERGENCY, None

    if termination is not None and termination.should_terminate:
        return termination.target_agent, TransitionSource.TERMINATION, None

    if state.ai_message_count > MESSAGE_HARD_LIMIT:
        return AgentRole.HANDOVER_SPECIALIST, TransitionSource.MESSAGE_LIMIT, None

    if get_follow_up_count(state) >= FOLLOW_UP_LIMIT and not new_information:
        target = next_agent(current)
        if target != current:
            return target, TransitionSource.FOLLOW_UP_LIMIT, None

    if proposed is None:
        return current, TransitionSource.HOLD, None
    try:
        return validate_proposed_agent(current, proposed), TransitionSource.GENERATOR, None
    except AgentTransitionError as e:
        return current, TransitionSource.HOLD, str(e)


def advance_agent(
    state: TrackingState,
    *,
    proposed: object = None,
    termination: TerminationDecision | None = None,
    emergency: EmergencySignal | None = None,
    new_information: bool = True,
) -> TransitionResult:
    """Apply one turn's transition to ``state``.

    Priority: emergency signal, termination decision, message and follow-up
    limits, then the generator's proposed agent. No proposal keeps the
    current agent; an unknown or backwards one does too and is reported in
    ``error``, while the turn itself carries on.

    The destination stage's follow-up counter resets when the stage changes,
    otherwise the current stage's counter goes up by one.
    """
    current = state.current_agent
    target, source, error = _pick_target(state, proposed, termination, emergency, new_information)

    if error:
        logger.warning("Agent transition held at %s: %s", current.value, error)

    if stage_for(target) != stage_for(current):
        tracking = reset_follow_up(state, target)
        logger.info("Agent transition %s -> %s (%s)", current.value, target.value, source.value)
    else:
        tracking = increment_follow_up(state, current)

    tracking = tracking.model_copy(update={"current_agent": target})
    return TransitionResult(
        previous_agent=current,
        agent=target,
        source=source,
        tracking=tracking,
        rejected_proposal=None if error is None else str(proposed),
        error=error,
    )
