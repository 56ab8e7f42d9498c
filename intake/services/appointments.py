"""Appointment lifecycle and the meeting room that hangs off it.

Once an appointment reaches a terminal status its room is inactive and the
call link is gone; every operation here preserves that.
"""

import logging
import uuid
from datetime import UTC, datetime

from intake.database import get_db
from intake.models.appointment import (
    TERMINAL_STATUSES,
    Appointment,
    AppointmentStatus,
    MeetingRoom,
)

logger = logging.getLogger(__name__)


class AppointmentStateError(ValueError):
    pass


class AppointmentNotFoundError(LookupError):
    pass


def _now() -> str:
    return datetime.now(UTC).isoformat()


def cancel_appointment(appointment: Appointment, room: MeetingRoom | None) -> tuple[Appointment, MeetingRoom | None]:
    if appointment.status == AppointmentStatus.CANCELLED:
        return appointment, room
    if appointment.status in TERMINAL_STATUSES:
        raise AppointmentStateError(f"Cannot cancel a {appointment.status.value} appointment")

    cancelled = appointment.model_copy(update={
        "status": AppointmentStatus.CANCELLED,
        "stream_call_id": None,
        "join_url": None,
        "updated_at": _now(),
    })
    closed = room.model_copy(update={"is_active": False}) if room else None
    return cancelled, closed


def reschedule_appointment(
    appointment: Appointment,
    room: MeetingRoom | None,
    scheduled_at: str,
) -> tuple[Appointment, MeetingRoom | None]:
    if appointment.status in TERMINAL_STATUSES:
        raise AppointmentStateError(f"Cannot reschedule a {appointment.status.value} appointment")

    moved = appointment.model_copy(update={
        "scheduled_at": scheduled_at,
        "status": AppointmentStatus.PENDING,
        "updated_at": _now(),
    })
    moved_room = room.model_copy(update={"scheduled_at": scheduled_at}) if room else None
    return moved, moved_room


def complete_appointment(appointment: Appointment, room: MeetingRoom | None) -> tuple[Appointment, MeetingRoom | None]:
    if appointment.status in TERMINAL_STATUSES:
        raise AppointmentStateError(f"Cannot complete a {appointment.status.value} appointment")
    done = appointment.model_copy(update={
        "status": AppointmentStatus.COMPLETED,
        "stream_call_id": None,
        "join_url": None,
        "updated_at": _now(),
    })
    return done, room.model_copy(update={"is_active": False}) if room else None


def check_lifecycle_invariants(appointment: Appointment, room: MeetingRoom | None) -> list[str]:
    """Return a description of every broken invariant; empty when consistent."""
    problems: list[str] = []
    if appointment.status in TERMINAL_STATUSES:
        if room is not None and room.is_active:
            problems.append("terminal appointment has an active meeting room")
        if appointment.stream_call_id or appointment.join_url:
            problems.append("terminal appointment still has a call link")
    if room is not None:
        if room.appointment_id != appointment.id:
            problems.append("meeting room belongs to another appointment")
        if room.is_active and room.scheduled_at != appointment.scheduled_at:
            problems.append("meeting room schedule differs from appointment")
    return problems


# --- persistence -----------------------------------------------------------


def _row_to_appointment(row) -> Appointment:
    return Appointment(
        id=row["id"],
        session_id=row["session_id"],
        scheduled_at=row["scheduled_at"],
        status=AppointmentStatus(row["status"]),
        stream_call_id=row["stream_call_id"],
        join_url=row["join_url"],
        updated_at=row["updated_at"],
    )


def _row_to_room(row) -> MeetingRoom:
    return MeetingRoom(
        id=row["id"],
        appointment_id=row["appointment_id"],
        scheduled_at=row["scheduled_at"],
        is_active=bool(row["is_active"]),
    )


async def create_appointment(session_id: str | None, scheduled_at: str) -> tuple[Appointment, MeetingRoom]:
    db = await get_db()
    appointment_id = str(uuid.uuid4())
    room_id = str(uuid.uuid4())
    appointment = Appointment(
        id=appointment_id,
        session_id=session_id,
        scheduled_at=scheduled_at,
        stream_call_id=f"call-{room_id}",
        join_url=f"/meet/{room_id}",
        updated_at=_now(),
    )
    room = MeetingRoom(id=room_id, appointment_id=appointment_id, scheduled_at=scheduled_at)
    await db.execute(
        "INSERT INTO appointments (id, session_id, scheduled_at, status, stream_call_id, join_url, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            appointment.id, appointment.session_id, appointment.scheduled_at, appointment.status.value,
            appointment.stream_call_id, appointment.join_url, appointment.updated_at,
        ),
    )
    await db.execute(
        "INSERT INTO meeting_rooms (id, appointment_id, scheduled_at, is_active) VALUES (?, ?, ?, ?)",
        (room.id, room.appointment_id, room.scheduled_at, 1),
    )
    await db.commit()
    logger.info("Created appointment %s for %s", appointment_id, scheduled_at)
    return appointment, room


async def load_appointment(appointment_id: str) -> tuple[Appointment, MeetingRoom | None]:
    db = await get_db()
    row = await db.fetch_one("SELECT * FROM appointments WHERE id = ?", (appointment_id,))
    if not row:
        raise AppointmentNotFoundError(appointment_id)
    room_row = await db.fetch_one("SELECT * FROM meeting_rooms WHERE appointment_id = ?", (appointment_id,))
    return _row_to_appointment(row), _row_to_room(room_row) if room_row else None


async def _store(appointment: Appointment, room: MeetingRoom | None) -> None:
    db = await get_db()
    await db.execute(
        "UPDATE appointments SET scheduled_at = ?, status = ?, stream_call_id = ?, join_url = ?, updated_at = ? "
        "WHERE id = ?",
        (
            appointment.scheduled_at, appointment.status.value, appointment.stream_call_id,
            appointment.join_url, appointment.updated_at, appointment.id,
        ),
    )
    if room is not None:
        await db.execute(
            "UPDATE meeting_rooms SET scheduled_at = ?, is_active = ? WHERE id = ?",
            (room.scheduled_at, 1 if room.is_active else 0, room.id),
        )
    await db.commit()


async def cancel_appointment_by_id(appointment_id: str) -> tuple[Appointment, MeetingRoom | None]:
    appointment, room = await load_appointment(appointment_id)
    appointment, room = cancel_appointment(appointment, room)
    await _store(appointment, room)
    logger.info("Cancelled appointment %s", appointment_id)
    return appointment, room


async def reschedule_appointment_by_id(appointment_id: str, scheduled_at: str) -> tuple[Appointment, MeetingRoom | None]:
    appointment, room = await load_appointment(appointment_id)
    appointment, room = reschedule_appointment(appointment, room, scheduled_at)
    await _store(appointment, room)
    logger.info("Rescheduled appointment %s to %s", appointment_id, scheduled_at)
    return appointment, room
