from fastapi import APIRouter, HTTPException

from intake.models.appointment import Appointment, MeetingRoom, RescheduleRequest
from intake.models.medical import CamelModel
from intake.services import appointments as lifecycle

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


class AppointmentCreate(CamelModel):
    session_id: str | None = None
    scheduled_at: str


class AppointmentResponse(CamelModel):
    appointment: Appointment
    meeting_room: MeetingRoom | None = None


@router.post("", response_model=AppointmentResponse)
async def create_appointment(body: AppointmentCreate):
    appointment, room = await lifecycle.create_appointment(body.session_id, body.scheduled_at)
    return AppointmentResponse(appointment=appointment, meeting_room=room)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(appointment_id: str):
    try:
        appointment, room = await lifecycle.load_appointment(appointment_id)
    except lifecycle.AppointmentNotFoundError:
        raise HTTPException(status_code=404, detail="Appointment not found") from None
    return AppointmentResponse(appointment=appointment, meeting_room=room)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(appointment_id: str):
    try:
        appointment, room = await lifecycle.cancel_appointment_by_id(appointment_id)
    except lifecycle.AppointmentNotFoundError:
        raise HTTPException(status_code=404, detail="Appointment not found") from None
    except lifecycle.AppointmentStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return AppointmentResponse(appointment=appointment, meeting_room=room)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(appointment_id: str, body: RescheduleRequest):
    try:
        appointment, room = await lifecycle.reschedule_appointment_by_id(appointment_id, body.scheduled_at)
    except lifecycle.AppointmentNotFoundError:
        raise HTTPException(status_code=404, detail="Appointment not found") from None
    except lifecycle.AppointmentStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return AppointmentResponse(appointment=appointment, meeting_room=room)
