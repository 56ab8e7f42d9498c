"""Conversation turn endpoints.

``POST /api/intake/turn`` takes the whole conversation in the request and
keeps nothing. The ``/api/sessions`` routes store messages and the medical
record, and run one turn at a time per session.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from intake.models.medical import MedicalRecord
from intake.models.tracking import TrackingState
from intake.models.triage import EmergencySignal
from intake.models.turn import (
    ChatMessage,
    ErrorEnvelope,
    ExchangeResponse,
    SessionCreate,
    SessionMessageCreate,
    SessionResponse,
    TurnRequest,
    TurnResponse,
)
from intake.services import sessions
from intake.services.completeness import calculate_completeness
from intake.services.llm import GeneratorConfigurationError
from intake.services.orchestrator import get_turn_service, process_turn
from intake.services.tracking import derive_tracking_state

logger = logging.getLogger(__name__)
router = APIRouter(tags=["intake"])


class TurnRequestError(ValueError):
    """Turn request rejected with a field-level message."""


def _error(status_code: int, error: str, details: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorEnvelope(error=error, details=details).model_dump(),
    )


def parse_turn_request(payload: object) -> TurnRequest:
    """Validate a turn body field by field so each failure names its field."""
    if not isinstance(payload, dict):
        raise TurnRequestError("history must be an array of messages")

    history_raw = payload.get("history")
    if not isinstance(history_raw, list):
        raise TurnRequestError("history must be an array of messages")
    try:
        history = [ChatMessage.model_validate(item) for item in history_raw]
    except ValidationError:
        raise TurnRequestError("history must be an array of messages") from None

    medical_raw = payload.get("medicalData")
    if not isinstance(medical_raw, dict):
        raise TurnRequestError("medicalData is required")
    try:
        record = MedicalRecord.model_validate(medical_raw)
    except ValidationError as e:
        raise TurnRequestError(f"medicalData is invalid: {e.error_count()} field error(s)") from None

    mode = payload.get("mode")
    if mode not in ("patient", "doctor"):
        raise TurnRequestError('mode must be "patient" or "doctor"')

    tracking = None
    if payload.get("trackingState") is not None:
        try:
            tracking = TrackingState.model_validate(payload["trackingState"])
        except ValidationError:
            raise TurnRequestError("trackingState is invalid") from None

    emergency = None
    if payload.get("emergencySignal") is not None:
        try:
            emergency = EmergencySignal.model_validate(payload["emergencySignal"])
        except ValidationError:
            raise TurnRequestError("emergencySignal is invalid") from None

    return TurnRequest(
        history=history,
        medical_data=record,
        mode=mode,
        tracking_state=tracking,
        emergency_signal=emergency,
    )


@router.post("/api/intake/turn", response_model=TurnResponse)
async def run_turn(request: Request):
    """Run one turn for a conversation whose state is sent in the request."""
    try:
        payload = await request.json()
    except Exception:
        return _error(400, "Invalid request", "Request body must be JSON")

    try:
        turn = parse_turn_request(payload)
    except TurnRequestError as e:
        return _error(400, "Invalid request", str(e))

    record = turn.medical_data
    tracking = turn.tracking_state

    if tracking is not None:
        # The record is authoritative for the active agent
        tracking = tracking.model_copy(update={"current_agent": record.current_agent})

    service = get_turn_service()
    try:
        result = await process_turn(
            turn.history, record, turn.mode, tracking, generator=service.generator, emergency=turn.emergency_signal
        )
    except GeneratorConfigurationError as e:
        logger.error("Turn failed, generator not configured: %s", e)
        return _error(503, "Configuration error", str(e))
    except Exception as e:
        logger.exception("Turn processing failed")
        return _error(500, "Internal error", str(e))

    response = TurnResponse(
        reply=result.reply,
        updated_data=result.record,
        active_agent=result.active_agent,
        tracking_state=result.tracking,
        was_recovered=result.was_recovered,
        termination=result.termination,
    )
    return JSONResponse(content=response.model_dump(mode="json", by_alias=True))


async def _session_response(session_id: str) -> SessionResponse:
    try:
        session, record = await sessions.load_session(session_id)
    except sessions.SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found") from None
    messages = await sessions.load_messages(session_id)
    return SessionResponse(
        id=session["id"],
        created_at=session["created_at"],
        status=session["status"],
        medical_data=record,
        completeness=calculate_completeness(record),
        tracking_state=derive_tracking_state(messages, record),
        updated_at=session["updated_at"],
    )


@router.post("/api/sessions", response_model=SessionResponse)
async def create_session(body: SessionCreate):
    """Start a new intake session."""
    created = await sessions.create_session()
    return await _session_response(created["id"])


@router.get("/api/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    return await _session_response(session_id)


@router.get("/api/sessions/{session_id}/messages", response_model=list[ChatMessage])
async def list_messages(session_id: str):
    try:
        await sessions.load_session(session_id)
    except sessions.SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found") from None
    return await sessions.load_messages(session_id)


@router.post(
    "/api/sessions/{session_id}/messages",
    response_model=ExchangeResponse,
)
async def post_message(session_id: str, body: SessionMessageCreate):
    """Store a patient message and run the turn it starts.

    Re-sending the same ``clientMessageId`` returns the stored exchange
    instead of running the turn again.
    """
    if not body.content.strip() and not body.images:
        return _error(400, "Invalid request", "content or images are required")
    try:
        return await get_turn_service().handle_message(
            session_id,
            body.content,
            images=body.images,
            client_message_id=body.client_message_id,
        )
    except sessions.SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found") from None
    except GeneratorConfigurationError as e:
        logger.error("Turn failed for session %s, generator not configured: %s", session_id, e)
        return _error(503, "Configuration error", str(e))
