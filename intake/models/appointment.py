from enum import Enum

from intake.models.medical import CamelModel


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
)


class Appointment(CamelModel):
    id: str
    session_id: str | None = None
    scheduled_at: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    stream_call_id: str | None = None
    join_url: str | None = None
    updated_at: str | None = None


class MeetingRoom(CamelModel):
    id: str
    appointment_id: str
    scheduled_at: str
    is_active: bool = True


class RescheduleRequest(CamelModel):
    scheduled_at: str
