"""Tests for database initialization and session storage."""

import sqlite3

import pytest

from intake.models.agents import AgentRole
from intake.models.medical import MedicalRecord
from intake.models.turn import ChatMessage
from intake.services import sessions


async def test_init_creates_tables(db):
    """Test that init_db creates the expected tables."""
    rows = await db.fetch_all(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    tables = [row[0] for row in rows]
    for table in ("intake_sessions", "chat_messages", "appointments", "meeting_rooms"):
        assert table in tables


async def test_create_and_load_session(db):
    created = await sessions.create_session(MedicalRecord(chief_complaint="Cough"))
    session, record = await sessions.load_session(created["id"])
    assert session["status"] == "in_progress"
    assert record.chief_complaint == "Cough"


async def test_load_missing_session(db):
    with pytest.raises(sessions.SessionNotFoundError):
        await sessions.load_session("missing")


async def test_messages_keep_insertion_order(db):
    created = await sessions.create_session()
    for i in range(5):
        role = "user" if i % 2 == 0 else "model"
        await sessions.append_message(created["id"], ChatMessage(role=role, text=f"m{i}"))
    await sessions.commit()

    messages = await sessions.load_messages(created["id"])
    assert [m.text for m in messages] == ["m0", "m1", "m2", "m3", "m4"]
    assert all(m.id and m.timestamp for m in messages)


async def test_message_fields_stored(db):
    created = await sessions.create_session()
    await sessions.append_message(
        created["id"],
        ChatMessage(role="model", text="Hi", images=["img"], active_agent=AgentRole.RECORDS_CLERK),
    )
    await sessions.commit()
    [message] = await sessions.load_messages(created["id"])
    assert message.images == ["img"]
    assert message.active_agent == AgentRole.RECORDS_CLERK


async def test_client_message_id_unique_per_session(db):
    created = await sessions.create_session()
    await sessions.append_message(created["id"], ChatMessage(role="user", text="a"), "temp-1")
    with pytest.raises(sqlite3.IntegrityError):
        await sessions.append_message(created["id"], ChatMessage(role="user", text="b"), "temp-1")
    await db.rollback()


async def test_find_exchange(db):
    created = await sessions.create_session()
    await sessions.append_message(created["id"], ChatMessage(role="user", text="hello"), "temp-1")
    assert (await sessions.find_exchange(created["id"], "temp-1"))[1] is None

    await sessions.append_message(created["id"], ChatMessage(role="model", text="Hi there"))
    await sessions.commit()

    user_message, reply = await sessions.find_exchange(created["id"], "temp-1")
    assert user_message.text == "hello"
    assert reply.text == "Hi there"
    assert await sessions.find_exchange(created["id"], "temp-2") is None


async def test_save_medical_record_and_status(db):
    created = await sessions.create_session()
    await sessions.save_medical_record(created["id"], MedicalRecord(hpi="Two days"), status="ready")
    await sessions.commit()
    session, record = await sessions.load_session(created["id"])
    assert session["status"] == "ready"
    assert record.hpi == "Two days"


async def test_uncommitted_writes_rolled_back(db):
    created = await sessions.create_session()
    await sessions.append_message(created["id"], ChatMessage(role="user", text="draft"))
    await db.rollback()
    assert await sessions.load_messages(created["id"]) == []
