"""Tests for appointment lifecycle transitions and their invariants."""

import pytest

from intake.models.appointment import Appointment, AppointmentStatus, MeetingRoom
from intake.services import appointments as lifecycle


def booked(status=AppointmentStatus.CONFIRMED):
    appointment = Appointment(
        id="appt-1",
        scheduled_at="2026-11-02T09:00:00Z",
        status=status,
        stream_call_id="call-1",
        join_url="/meet/room-1",
    )
    room = MeetingRoom(id="room-1", appointment_id="appt-1", scheduled_at="2026-11-02T09:00:00Z")
    return appointment, room


class TestCancel:
    def test_cancel_closes_room_and_link(self):
        appointment, room = lifecycle.cancel_appointment(*booked())
        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.stream_call_id is None
        assert appointment.join_url is None
        assert room.is_active is False
        assert lifecycle.check_lifecycle_invariants(appointment, room) == []

    def test_cancel_is_idempotent(self):
        once = lifecycle.cancel_appointment(*booked())
        twice = lifecycle.cancel_appointment(*once)
        assert twice == once

    def test_cannot_cancel_completed(self):
        with pytest.raises(lifecycle.AppointmentStateError):
            lifecycle.cancel_appointment(*booked(AppointmentStatus.COMPLETED))


class TestReschedule:
    def test_room_follows_new_time(self):
        appointment, room = lifecycle.reschedule_appointment(*booked(), "2026-11-05T14:00:00Z")
        assert appointment.status == AppointmentStatus.PENDING
        assert appointment.scheduled_at == "2026-11-05T14:00:00Z"
        assert room.scheduled_at == "2026-11-05T14:00:00Z"
        assert lifecycle.check_lifecycle_invariants(appointment, room) == []

    def test_cannot_reschedule_cancelled(self):
        cancelled = lifecycle.cancel_appointment(*booked())
        with pytest.raises(lifecycle.AppointmentStateError):
            lifecycle.reschedule_appointment(*cancelled, "2026-11-05T14:00:00Z")


class TestInvariants:
    def test_complete_keeps_invariants(self):
        appointment, room = lifecycle.complete_appointment(*booked())
        assert appointment.status == AppointmentStatus.COMPLETED
        assert lifecycle.check_lifecycle_invariants(appointment, room) == []

    def test_terminal_with_active_room_flagged(self):
        appointment, room = booked(AppointmentStatus.NO_SHOW)
        problems = lifecycle.check_lifecycle_invariants(appointment, room)
        assert "terminal appointment has an active meeting room" in problems
        assert "terminal appointment still has a call link" in problems

    def test_room_schedule_mismatch_flagged(self):
        appointment, room = booked()
        room = room.model_copy(update={"scheduled_at": "2026-12-01T00:00:00Z"})
        assert lifecycle.check_lifecycle_invariants(appointment, room) == [
            "meeting room schedule differs from appointment"
        ]

    def test_no_room(self):
        appointment, _ = booked()
        assert lifecycle.check_lifecycle_invariants(appointment, None) == []


async def test_persisted_lifecycle(db):
    appointment, room = await lifecycle.create_appointment(None, "2026-11-02T09:00:00Z")
    await lifecycle.reschedule_appointment_by_id(appointment.id, "2026-11-03T09:00:00Z")
    await lifecycle.cancel_appointment_by_id(appointment.id)

    stored, stored_room = await lifecycle.load_appointment(appointment.id)
    assert stored.status == AppointmentStatus.CANCELLED
    assert stored.scheduled_at == "2026-11-03T09:00:00Z"
    assert stored_room.is_active is False
    assert lifecycle.check_lifecycle_invariants(stored, stored_room) == []


async def test_load_missing_appointment(db):
    with pytest.raises(lifecycle.AppointmentNotFoundError):
        await lifecycle.load_appointment("missing")
