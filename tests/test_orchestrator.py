"""Tests for turn processing and the per-session turn service."""

import asyncio

import pytest
from conftest import ScriptedGenerator, agent_reply, reliable

from intake.models.agents import AgentRole
from intake.models.medical import MedicalRecord
from intake.models.tracking import TrackingState
from intake.models.triage import EmergencySignal, TerminationReason
from intake.models.turn import ChatMessage
from intake.services import sessions
from intake.services.event_bus import SessionEventBus
from intake.services.orchestrator import (
    SessionLockRegistry,
    SessionTurnService,
    apply_negative_response,
    process_turn,
)
from intake.services.response_parser import FALLBACK_REPLY
from intake.services.state_machine import TransitionSource
from intake.services.tracking import PLACEHOLDERS

LONG_HPI = "Dry cough for five days, worse at night, mild fever on day two, no shortness of breath."


def user(text: str) -> ChatMessage:
    return ChatMessage(role="user", text=text)


def at(agent: AgentRole) -> TrackingState:
    return TrackingState.initial(agent)


class TestProcessTurn:
    async def test_first_turn_merges_data_and_advances(self):
        generator = ScriptedGenerator(
            agent_reply("How long have you had it?", agent="ClinicalInvestigator", chiefComplaint="Cough")
        )
        record = MedicalRecord()
        result = await process_turn([user("I have a cough")], record, "patient", generator=reliable(generator))

        assert result.reply == "How long have you had it?"
        assert result.record.chief_complaint == "Cough"
        assert result.active_agent == AgentRole.CLINICAL_INVESTIGATOR
        assert result.record.current_agent == AgentRole.CLINICAL_INVESTIGATOR
        assert result.tracking.current_agent == AgentRole.CLINICAL_INVESTIGATOR
        assert result.tracking.ai_message_count == 1
        assert result.tracking.completeness == 20
        assert "cough" in result.tracking.answered_topics
        assert result.was_recovered is False
        # inputs untouched
        assert record.chief_complaint is None
        assert record.current_agent == AgentRole.TRIAGE

    async def test_prompt_has_no_placeholders(self):
        generator = ScriptedGenerator(agent_reply())
        await process_turn([user("hello")], MedicalRecord(), "patient", generator=reliable(generator))
        prompt = generator.calls[0][2]
        assert "Triage Specialist Agent" in prompt
        for name in PLACEHOLDERS:
            assert "{" + name + "}" not in prompt

    async def test_invalid_output_keeps_record_and_agent(self):
        generator = ScriptedGenerator("")
        record = MedicalRecord(chief_complaint="Cough", current_agent=AgentRole.CLINICAL_INVESTIGATOR)
        result = await process_turn(
            [user("it hurts")], record, "patient", at(AgentRole.CLINICAL_INVESTIGATOR), generator=reliable(generator)
        )
        assert result.reply == FALLBACK_REPLY
        assert result.outcome.exhausted is True
        assert result.record.chief_complaint == "Cough"
        assert result.active_agent == AgentRole.CLINICAL_INVESTIGATOR
        assert result.transition.source == TransitionSource.HOLD
        assert result.tracking.ai_message_count == 1

    async def test_negative_answer_closes_records_check(self):
        generator = ScriptedGenerator(agent_reply("Thanks.", agent="RecordsClerk"))
        record = MedicalRecord(chief_complaint="Cough", hpi=LONG_HPI, current_agent=AgentRole.RECORDS_CLERK)
        result = await process_turn(
            [user("No")], record, "patient", at(AgentRole.RECORDS_CLERK), generator=reliable(generator)
        )
        assert result.record.records_check_completed is True

    async def test_completion_phrase_hands_over(self):
        generator = ScriptedGenerator(agent_reply("Anything else?", agent="HistorySpecialist"))
        record = MedicalRecord(chief_complaint="Cough", hpi=LONG_HPI, current_agent=AgentRole.HISTORY_SPECIALIST)
        result = await process_turn(
            [user("I'm done")], record, "patient", at(AgentRole.HISTORY_SPECIALIST), generator=reliable(generator)
        )
        assert result.termination.reason == TerminationReason.COMPLETION_PHRASE
        assert result.active_agent == AgentRole.HANDOVER_SPECIALIST
        assert result.transition.source == TransitionSource.TERMINATION

    async def test_emergency_signal_hands_over(self):
        generator = ScriptedGenerator(agent_reply(agent="Triage"))
        result = await process_turn(
            [user("I feel faint")],
            MedicalRecord(),
            "patient",
            generator=reliable(generator),
            emergency=EmergencySignal(is_emergency=True, severity="critical"),
        )
        assert result.active_agent == AgentRole.HANDOVER_SPECIALIST
        assert result.transition.source == TransitionSource.EMERGENCY

    async def test_doctor_mode_keeps_agent_and_counters(self):
        generator = ScriptedGenerator(agent_reply("Consider CXR.", agent="HandoverSpecialist"))
        record = MedicalRecord(chief_complaint="Cough", current_agent=AgentRole.RECORDS_CLERK)
        tracking = at(AgentRole.RECORDS_CLERK).model_copy(update={"ai_message_count": 4})
        result = await process_turn(
            [ChatMessage(role="doctor", text="Differentials?")], record, "doctor", tracking,
            generator=reliable(generator),
        )
        assert result.reply == "Consider CXR."
        assert result.active_agent == AgentRole.RECORDS_CLERK
        assert result.tracking.ai_message_count == 4
        assert result.transition is None
        assert "clinical decision support" in generator.calls[0][2]


class TestApplyNegativeResponse:
    def test_history_stage(self):
        record = apply_negative_response(MedicalRecord(), AgentRole.HISTORY_SPECIALIST, "none")
        assert record.history_check_completed is True

    def test_other_stages_untouched(self):
        record = apply_negative_response(MedicalRecord(), AgentRole.TRIAGE, "no")
        assert record == MedicalRecord()


class TestSessionLockRegistry:
    async def test_lock_released_and_dropped_after_turn(self):
        locks = SessionLockRegistry()
        async with locks.hold("a"):
            async with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    async def test_lock_kept_while_a_turn_is_waiting(self):
        locks = SessionLockRegistry()
        order = []
        release = asyncio.Event()

        async def first():
            async with locks.hold("a"):
                order.append("first")
                await release.wait()

        async def second():
            async with locks.hold("a"):
                order.append("second")

        tasks = [asyncio.ensure_future(first()), asyncio.ensure_future(second())]
        await asyncio.sleep(0)
        assert order == ["first"]
        assert len(locks) == 1
        release.set()
        await asyncio.gather(*tasks)

        assert order == ["first", "second"]
        assert len(locks) == 0

    async def test_cancelled_waiter_does_not_leak(self):
        locks = SessionLockRegistry()

        async def waiting_turn():
            async with locks.hold("a"):
                pass

        async with locks.hold("a"):
            waiter = asyncio.ensure_future(waiting_turn())
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
        assert len(locks) == 0


class TestSessionTurnService:
    async def test_turn_is_stored(self, db):
        generator = ScriptedGenerator(agent_reply("When did it start?", agent="ClinicalInvestigator", chiefComplaint="Cough"))
        service = SessionTurnService(generator=reliable(generator), bus=SessionEventBus())
        created = await sessions.create_session()

        exchange = await service.handle_message(created["id"], "I have a cough", client_message_id="temp-1")

        assert exchange.duplicate is False
        assert exchange.ai_message.text == "When did it start?"
        assert exchange.active_agent == AgentRole.CLINICAL_INVESTIGATOR
        messages = await sessions.load_messages(created["id"])
        assert [m.role for m in messages] == ["user", "model"]
        assert messages[1].active_agent == AgentRole.CLINICAL_INVESTIGATOR
        _, record = await sessions.load_session(created["id"])
        assert record.chief_complaint == "Cough"
        assert record.current_agent == AgentRole.CLINICAL_INVESTIGATOR

    async def test_duplicate_client_id_replays_exchange(self, db):
        generator = ScriptedGenerator(agent_reply("First answer"), agent_reply("Second answer"))
        service = SessionTurnService(generator=reliable(generator), bus=SessionEventBus())
        created = await sessions.create_session()

        first = await service.handle_message(created["id"], "hello", client_message_id="temp-1")
        again = await service.handle_message(created["id"], "hello", client_message_id="temp-1")

        assert again.duplicate is True
        assert again.user_message.id == first.user_message.id
        assert again.ai_message.text == "First answer"
        assert len(generator.calls) == 1
        assert len(await sessions.load_messages(created["id"])) == 2

    async def test_unknown_session(self, db):
        service = SessionTurnService(generator=reliable(ScriptedGenerator()), bus=SessionEventBus())
        with pytest.raises(sessions.SessionNotFoundError):
            await service.handle_message("missing", "hello")

    async def test_turns_for_one_session_do_not_overlap(self, db):
        active = 0
        peak = 0

        class Slow:
            async def generate(self, history, record, prompt):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return agent_reply("ok")

        service = SessionTurnService(generator=reliable(Slow()), bus=SessionEventBus())
        created = await sessions.create_session()
        await asyncio.gather(*(service.handle_message(created["id"], f"message {i}") for i in range(3)))

        assert peak == 1
        messages = await sessions.load_messages(created["id"])
        assert [m.role for m in messages] == ["user", "model"] * 3

    async def test_cancelled_turn_stores_nothing(self, db):
        started = asyncio.Event()

        class Hanging:
            async def generate(self, history, record, prompt):
                started.set()
                await asyncio.sleep(60)

        service = SessionTurnService(generator=reliable(Hanging()), bus=SessionEventBus())
        created = await sessions.create_session()
        task = asyncio.ensure_future(service.handle_message(created["id"], "hello"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await sessions.load_messages(created["id"]) == []

    async def test_failed_write_rolls_back_messages(self, db, monkeypatch):
        async def broken_save(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(sessions, "save_medical_record", broken_save)
        service = SessionTurnService(generator=reliable(ScriptedGenerator(agent_reply("Hi"))), bus=SessionEventBus())
        created = await sessions.create_session()

        with pytest.raises(RuntimeError, match="disk full"):
            await service.handle_message(created["id"], "hello")
        assert await sessions.load_messages(created["id"]) == []

    async def test_events_published(self, db):
        bus = SessionEventBus()
        generator = ScriptedGenerator(agent_reply("Next", agent="ClinicalInvestigator", chiefComplaint="Cough"))
        service = SessionTurnService(generator=reliable(generator), bus=bus)
        created = await sessions.create_session()
        queue = bus.subscribe(created["id"])

        await service.handle_message(created["id"], "I have a cough")

        first = queue.get_nowait()
        second = queue.get_nowait()
        assert first["type"] == "turn_completed"
        assert first["session_id"] == created["id"]
        assert first["completeness"] == 20
        assert second == {
            "type": "agent_transition",
            "from": "Triage",
            "to": "ClinicalInvestigator",
            "source": "generator",
            "session_id": created["id"],
        }

    async def test_ready_intake_gets_handover_and_status(self, db):
        record = MedicalRecord(
            chief_complaint="Cough",
            hpi=LONG_HPI,
            records_check_completed=True,
            history_check_completed=True,
            current_agent=AgentRole.HANDOVER_SPECIALIST,
        )
        generator = ScriptedGenerator(agent_reply("Thank you.", agent="HandoverSpecialist"))
        service = SessionTurnService(generator=reliable(generator), bus=SessionEventBus())
        created = await sessions.create_session(record)

        exchange = await service.handle_message(created["id"], "Nothing else")

        assert exchange.medical_data.clinical_handover is not None
        assert exchange.medical_data.clinical_handover.is_complete()
        assert exchange.medical_data.booking_status == "ready"
        session, _ = await sessions.load_session(created["id"])
        assert session["status"] == "ready"
