from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import aiosqlite

from intake.config import DATABASE_PATH

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        await self.conn.execute(query, params or ())

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        await self.conn.executescript(script)


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        conn = await aiosqlite.connect(DATABASE_PATH)
        conn.row_factory = aiosqlite.Row
        _db = SQLiteAdapter(conn)
        logger.info("Connected to SQLite database at %s", DATABASE_PATH)
    return _db


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS intake_sessions (
        id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'in_progress',
        medical_data TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS chat_messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        session_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        images TEXT DEFAULT '[]',
        active_agent TEXT,
        client_message_id TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES intake_sessions(id)
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_chat_messages_client_id
        ON chat_messages (session_id, client_message_id)
        WHERE client_message_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS appointments (
        id TEXT PRIMARY KEY,
        session_id TEXT,
        scheduled_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        stream_call_id TEXT,
        join_url TEXT,
        updated_at TEXT,
        FOREIGN KEY (session_id) REFERENCES intake_sessions(id)
    );

    CREATE TABLE IF NOT EXISTS meeting_rooms (
        id TEXT PRIMARY KEY,
        appointment_id TEXT NOT NULL UNIQUE,
        scheduled_at TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY (appointment_id) REFERENCES appointments(id)
    );
"""


async def init_db() -> None:
    db = await get_db()
    await db.executescript(SQLITE_SCHEMA)
    await db.commit()


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None
