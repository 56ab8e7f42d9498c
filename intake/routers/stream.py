import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from intake.services import sessions
from intake.services.event_bus import event_bus

logger = logging.getLogger(__name__)
router = APIRouter()

# Keepalive interval while no events arrive
PING_INTERVAL_SECONDS = 25


@router.websocket("/ws/sessions/{session_id}")
async def session_events(websocket: WebSocket, session_id: str):
    """Push turn and agent-transition events for one session."""
    await websocket.accept()

    try:
        await sessions.load_session(session_id)
    except sessions.SessionNotFoundError:
        await websocket.send_json({"type": "error", "message": f"Session {session_id} not found"})
        await websocket.close()
        return

    queue = event_bus.subscribe(session_id)
    await websocket.send_json({"type": "subscribed", "session_id": session_id})
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=PING_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "ping"})
                continue
            await websocket.send_json(event)
    except WebSocketDisconnect:
        logger.info("Event stream closed for session %s", session_id)
    finally:
        event_bus.unsubscribe(session_id, queue)
