"""Turn processing for intake conversations.

``process_turn`` runs one turn over explicit inputs and returns the new
record, agent and tracking state. ``SessionTurnService`` wraps it for stored
sessions: one turn at a time per session, writes only after the generator
has answered.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Literal

from pydantic import ValidationError

from intake.models.agents import AgentRole
from intake.models.medical import MedicalDataUpdate, MedicalRecord, merge_medical_data
from intake.models.tracking import TrackingState
from intake.models.triage import EmergencySignal, TerminationDecision
from intake.models.turn import ChatMessage, ExchangeResponse
from intake.services import sessions
from intake.services.completeness import calculate_completeness, is_intake_ready, is_sbar_complete
from intake.services.event_bus import SessionEventBus, event_bus
from intake.services.handover import generate_clinical_handover
from intake.services.llm import get_llm_client
from intake.services.prompts import build_agent_prompt, build_doctor_prompt
from intake.services.reliability import GenerationOutcome, ReliableGenerator
from intake.services.state_machine import TransitionResult, advance_agent
from intake.services.termination import detect_termination_signal, is_negative_response
from intake.services.tracking import (
    derive_tracking_state,
    extract_answered_topics,
    has_new_information,
    mark_topics_answered,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnResult:
    reply: str
    record: MedicalRecord
    active_agent: AgentRole
    tracking: TrackingState
    outcome: GenerationOutcome
    termination: TerminationDecision | None = None
    transition: TransitionResult | None = None

    @property
    def was_recovered(self) -> bool:
        return self.outcome.was_recovered


def last_user_text(history: list[ChatMessage]) -> str:
    for message in reversed(history):
        if message.role == "user":
            return message.text or ""
    return ""


def apply_negative_response(record: MedicalRecord, agent: AgentRole, utterance: str) -> MedicalRecord:
    """A plain "no" to the records or history question closes that check."""
    if not is_negative_response(utterance):
        return record
    if agent == AgentRole.RECORDS_CLERK and not record.records_check_completed:
        logger.info("Negative response in records stage; marking records check complete")
        return merge_medical_data(record, MedicalDataUpdate(records_check_completed=True))
    if agent == AgentRole.HISTORY_SPECIALIST and not record.history_check_completed:
        logger.info("Negative response in history stage; marking history check complete")
        return merge_medical_data(record, MedicalDataUpdate(history_check_completed=True))
    return record


def _apply_updated_data(record: MedicalRecord, payload: dict | None) -> MedicalRecord:
    if not payload:
        return record
    updated = payload.get("updatedData")
    if not isinstance(updated, dict):
        return record
    try:
        update = MedicalDataUpdate.model_validate(updated)
    except ValidationError as e:
        logger.warning("Discarding invalid updatedData from generator: %s", e)
        return record
    return merge_medical_data(record, update)


async def process_turn(
    history: list[ChatMessage],
    record: MedicalRecord,
    mode: Literal["patient", "doctor"],
    tracking: TrackingState | None = None,
    *,
    generator: ReliableGenerator,
    emergency: EmergencySignal | None = None,
) -> TurnResult:
    """Run one conversation turn.

    ``history`` must already end with the new user message. Nothing passed in
    is mutated; the caller stores the returned record and tracking state.
    """
    if tracking is None:
        tracking = derive_tracking_state(history[:-1], record)

    if mode == "doctor":
        outcome = await generator.generate(history, record, build_doctor_prompt(record))
        merged = _apply_updated_data(record, outcome.result.payload if outcome.result.is_valid else None)
        return TurnResult(
            reply=outcome.reply,
            record=merged,
            active_agent=merged.current_agent,
            tracking=tracking.model_copy(update={"completeness": calculate_completeness(merged)}),
            outcome=outcome,
        )

    utterance = last_user_text(history)
    agent = tracking.current_agent
    new_information = has_new_information(tracking, utterance)
    tracking = mark_topics_answered(tracking, extract_answered_topics(utterance))

    record = apply_negative_response(record, agent, utterance)
    completeness = calculate_completeness(record)
    tracking = tracking.model_copy(update={"completeness": completeness})

    termination = detect_termination_signal(
        utterance,
        agent,
        tracking.ai_message_count,
        completeness,
        has_chief_complaint=bool(record.chief_complaint and record.chief_complaint.strip()),
        has_hpi=bool(record.hpi and record.hpi.strip()),
    )

    prompt = build_agent_prompt(agent, record, tracking)
    outcome = await generator.generate(history, record, prompt)

    payload = outcome.result.payload if outcome.result.is_valid else None
    merged = _apply_updated_data(record, payload)

    transition = advance_agent(
        tracking,
        proposed=payload.get("activeAgent") if payload else None,
        termination=termination,
        emergency=emergency,
        new_information=new_information,
    )

    merged = merged.model_copy(update={"current_agent": transition.agent})
    next_tracking = transition.tracking.model_copy(
        update={
            "ai_message_count": transition.tracking.ai_message_count + 1,
            "completeness": calculate_completeness(merged),
        }
    )

    return TurnResult(
        reply=outcome.reply,
        record=merged,
        active_agent=transition.agent,
        tracking=next_tracking,
        outcome=outcome,
        termination=termination,
        transition=transition,
    )


class SessionLockRegistry:
    """One ``asyncio.Lock`` per session id, dropped once no turn holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)


class SessionTurnService:
    def __init__(
        self,
        generator: ReliableGenerator | None = None,
        bus: SessionEventBus = event_bus,
        locks: SessionLockRegistry | None = None,
    ) -> None:
        self._generator = generator
        self.bus = bus
        self.locks = locks or SessionLockRegistry()

    @property
    def generator(self) -> ReliableGenerator:
        if self._generator is None:
            self._generator = ReliableGenerator(get_llm_client())
        return self._generator

    async def handle_message(
        self,
        session_id: str,
        content: str,
        images: list[str] | None = None,
        client_message_id: str | None = None,
        emergency: EmergencySignal | None = None,
    ) -> ExchangeResponse:
        async with self.locks.hold(session_id):
            _, record = await sessions.load_session(session_id)

            if client_message_id:
                existing = await sessions.find_exchange(session_id, client_message_id)
                if existing is not None and existing[1] is not None:
                    logger.info("Duplicate delivery of %s for session %s", client_message_id, session_id)
                    user_message, ai_message = existing
                    return ExchangeResponse(
                        user_message=user_message,
                        ai_message=ai_message,
                        medical_data=record,
                        active_agent=record.current_agent,
                        completeness=calculate_completeness(record),
                        duplicate=True,
                    )

            history = await sessions.load_messages(session_id)
            tracking = derive_tracking_state(history, record)
            user_message = ChatMessage(role="user", text=content, images=images or [])

            result = await process_turn(
                [*history, user_message],
                record,
                "patient",
                tracking,
                generator=self.generator,
                emergency=emergency,
            )

            updated = result.record
            status = None
            if is_intake_ready(updated) and not is_sbar_complete(updated.clinical_handover):
                handover = await generate_clinical_handover(updated)
                updated = merge_medical_data(
                    updated, MedicalDataUpdate(clinical_handover=handover, booking_status="ready")
                )
            if updated.booking_status == "ready":
                status = "ready"

            try:
                stored_user = await sessions.append_message(session_id, user_message, client_message_id)
                stored_ai = await sessions.append_message(
                    session_id,
                    ChatMessage(role="model", text=result.reply, active_agent=result.active_agent),
                )
                await sessions.save_medical_record(session_id, updated, status=status)
                await sessions.commit()
            except Exception:
                await sessions.rollback()
                raise

        completeness = calculate_completeness(updated)
        await self.bus.publish(session_id, {
            "type": "turn_completed",
            "message_id": stored_ai.id,
            "active_agent": result.active_agent.value,
            "completeness": completeness,
            "was_recovered": result.was_recovered,
        })
        if result.transition is not None and result.transition.agent != result.transition.previous_agent:
            await self.bus.publish(session_id, {
                "type": "agent_transition",
                "from": result.transition.previous_agent.value,
                "to": result.transition.agent.value,
                "source": result.transition.source.value,
            })

        return ExchangeResponse(
            user_message=stored_user,
            ai_message=stored_ai,
            medical_data=updated,
            active_agent=result.active_agent,
            completeness=completeness,
        )


_service: SessionTurnService | None = None


def get_turn_service() -> SessionTurnService:
    global _service
    if _service is None:
        _service = SessionTurnService()
    return _service
