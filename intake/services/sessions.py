"""Storage boundary for intake sessions.

Two things are persisted per session: an append-only, ordered message list and
one mutable medical-record row. Writes here do not commit; callers commit once
per turn.
"""

import json
import logging
import uuid
from datetime import UTC, datetime

from intake.database import get_db
from intake.models.agents import AgentRole
from intake.models.medical import MedicalRecord
from intake.models.turn import ChatMessage

logger = logging.getLogger(__name__)


class SessionNotFoundError(LookupError):
    pass


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _row_to_message(row) -> ChatMessage:
    images: list[str] = []
    try:
        images = json.loads(row["images"] or "[]")
    except json.JSONDecodeError:
        logger.warning("Failed to parse images for message %s", row["id"])
    agent = row["active_agent"]
    return ChatMessage(
        id=row["id"],
        role=row["role"],
        text=row["content"],
        images=images,
        active_agent=AgentRole(agent) if agent else None,
        timestamp=row["created_at"],
    )


async def create_session(record: MedicalRecord | None = None) -> dict:
    db = await get_db()
    session_id = str(uuid.uuid4())
    now = _now()
    record = record or MedicalRecord()
    await db.execute(
        "INSERT INTO intake_sessions (id, created_at, status, medical_data, updated_at) VALUES (?, ?, ?, ?, ?)",
        (session_id, now, "in_progress", record.model_dump_json(by_alias=True), now),
    )
    await db.commit()
    logger.info("Created intake session %s", session_id)
    return {"id": session_id, "created_at": now, "status": "in_progress", "updated_at": now}


async def load_session(session_id: str) -> tuple[dict, MedicalRecord]:
    db = await get_db()
    row = await db.fetch_one("SELECT * FROM intake_sessions WHERE id = ?", (session_id,))
    if not row:
        raise SessionNotFoundError(session_id)

    record = MedicalRecord()
    try:
        record = MedicalRecord.model_validate_json(row["medical_data"] or "{}")
    except Exception:
        logger.warning("Failed to parse medical data for session %s", session_id)

    session = {
        "id": row["id"],
        "created_at": row["created_at"],
        "status": row["status"],
        "updated_at": row["updated_at"],
    }
    return session, record


async def load_messages(session_id: str) -> list[ChatMessage]:
    db = await get_db()
    rows = await db.fetch_all(
        "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq ASC",
        (session_id,),
    )
    return [_row_to_message(row) for row in rows]


async def append_message(
    session_id: str,
    message: ChatMessage,
    client_message_id: str | None = None,
) -> ChatMessage:
    db = await get_db()
    stored = message.model_copy(update={"id": str(uuid.uuid4()), "timestamp": _now()})
    await db.execute(
        "INSERT INTO chat_messages (id, session_id, role, content, images, active_agent, client_message_id, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            stored.id,
            session_id,
            stored.role,
            stored.text,
            json.dumps(stored.images),
            stored.active_agent.value if stored.active_agent else None,
            client_message_id,
            stored.timestamp,
        ),
    )
    return stored


async def find_exchange(session_id: str, client_message_id: str) -> tuple[ChatMessage, ChatMessage | None] | None:
    """Stored user message for a client id and the agent reply that followed it."""
    db = await get_db()
    user_row = await db.fetch_one(
        "SELECT * FROM chat_messages WHERE session_id = ? AND client_message_id = ?",
        (session_id, client_message_id),
    )
    if not user_row:
        return None
    reply_row = await db.fetch_one(
        "SELECT * FROM chat_messages WHERE session_id = ? AND seq > ? AND role != 'user' ORDER BY seq ASC LIMIT 1",
        (session_id, user_row["seq"]),
    )
    return _row_to_message(user_row), _row_to_message(reply_row) if reply_row else None


async def save_medical_record(session_id: str, record: MedicalRecord, status: str | None = None) -> None:
    db = await get_db()
    if status:
        await db.execute(
            "UPDATE intake_sessions SET medical_data = ?, status = ?, updated_at = ? WHERE id = ?",
            (record.model_dump_json(by_alias=True), status, _now(), session_id),
        )
    else:
        await db.execute(
            "UPDATE intake_sessions SET medical_data = ?, updated_at = ? WHERE id = ?",
            (record.model_dump_json(by_alias=True), _now(), session_id),
        )


async def commit() -> None:
    db = await get_db()
    await db.commit()


async def rollback() -> None:
    db = await get_db()
    await db.rollback()
