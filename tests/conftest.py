import json
import os

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB and no upstream API keys for tests
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["LLM_PROVIDER"] = "auto"
os.environ["DUMMY_MODE"] = "false"
os.environ["DATABASE_PATH"] = ":memory:"

from intake.database import close_db, init_db
from intake.main import app
from intake.services import orchestrator
from intake.services.event_bus import SessionEventBus
from intake.services.reliability import ReliableGenerator


def agent_reply(reply: str = "Hello! What brings you in today?", *, agent: str | None = "Triage", **updated) -> str:
    """Fenced JSON the way the upstream generator answers."""
    payload: dict = {
        "thought": {"strategy": "test", "nextMove": reply},
        "reply": reply,
        "updatedData": updated,
    }
    if agent is not None:
        payload["activeAgent"] = agent
    return "```json\n" + json.dumps(payload) + "\n```"


class ScriptedGenerator:
    """Returns queued outputs in order; the last one repeats. Exceptions are raised."""

    def __init__(self, *outputs):
        self.outputs = list(outputs) or [agent_reply()]
        self.calls: list[tuple] = []

    async def generate(self, history, record, prompt):
        self.calls.append((list(history), record, prompt))
        item = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingScheduler:
    """Scheduler that records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, delay):
        self.delays.append(delay)


def reliable(generator, scheduler=None, **kwargs) -> ReliableGenerator:
    kwargs.setdefault("timeout", None)
    return ReliableGenerator(generator, scheduler or RecordingScheduler(), **kwargs)


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import intake.database as db_mod

    if db_mod._db is not None:
        await db_mod._db.close()
    db_mod._db = None
    db_mod.DATABASE_PATH = ":memory:"

    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()


@pytest.fixture
def scripted():
    return ScriptedGenerator()


@pytest.fixture
def turn_service(scripted, monkeypatch):
    """Session turn service wired to the scripted generator and a private bus."""
    service = orchestrator.SessionTurnService(generator=reliable(scripted), bus=SessionEventBus())
    monkeypatch.setattr(orchestrator, "_service", service)
    return service


@pytest.fixture
def client(db):
    """Provide a synchronous TestClient for HTTP endpoint tests."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(db):
    """Provide an async httpx client for async HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
