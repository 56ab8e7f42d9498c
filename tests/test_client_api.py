"""Tests for the HTTP sender and connectivity monitor used by the delivery queue."""

import asyncio

import httpx
import pytest
from conftest import RecordingScheduler, agent_reply
from httpx import ASGITransport

from intake.client.api import ConnectivityMonitor, DeliveryError, IntakeApiClient
from intake.client.delivery_queue import MessageDeliveryQueue
from intake.main import app
from intake.models.delivery import MessageStatus, PendingMessage


def mock_api(handler) -> IntakeApiClient:
    transport = httpx.MockTransport(handler)
    return IntakeApiClient(client=httpx.AsyncClient(transport=transport, base_url="http://intake"))


def exchange_json(user_id="u-1", reply_id="a-1", duplicate=False) -> dict:
    return {
        "userMessage": {"id": user_id, "role": "user", "text": "hi", "images": [], "timestamp": "2026-10-19T10:00:00+00:00"},
        "aiMessage": {"id": reply_id, "role": "model", "text": "Hello!", "images": [],
                      "activeAgent": "Triage", "timestamp": "2026-10-19T10:00:01+00:00"},
        "duplicate": duplicate,
    }


class TestSendMessage:
    async def test_posts_temp_id_as_client_message_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = request.read()
            return httpx.Response(200, json=exchange_json())

        api = mock_api(handler)
        result = await api.send_message("s-1", PendingMessage(temp_id="temp-9", content="hi"))

        assert seen["path"] == "/api/sessions/s-1/messages"
        assert b'"clientMessageId":"temp-9"' in seen["body"].replace(b" ", b"")
        assert result.message_id == "u-1"
        assert result.reply.text == "Hello!"
        assert result.reply.role == "model"

    async def test_http_error_raises_delivery_error(self):
        api = mock_api(lambda request: httpx.Response(503, json={"error": "Configuration error", "details": "no key"}))
        with pytest.raises(DeliveryError) as exc:
            await api.send_message("s-1", PendingMessage(temp_id="t", content="hi"))
        assert exc.value.status_code == 503
        assert "no key" in str(exc.value)

    async def test_network_error_raises_delivery_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        api = mock_api(handler)
        with pytest.raises(DeliveryError, match="Network error"):
            await api.send_message("s-1", PendingMessage(temp_id="t", content="hi"))

    async def test_is_reachable(self):
        assert await mock_api(lambda request: httpx.Response(200, json={"status": "ok"})).is_reachable() is True

        def down(request):
            raise httpx.ConnectError("down")

        assert await mock_api(down).is_reachable() is False


class TestConnectivityMonitor:
    async def test_flushes_queue_when_back_online(self):
        state = {"online": False}

        def handler(request: httpx.Request) -> httpx.Response:
            if not state["online"]:
                raise httpx.ConnectError("offline")
            if request.url.path == "/health":
                return httpx.Response(200, json={"status": "ok"})
            return httpx.Response(200, json=exchange_json())

        api = mock_api(handler)
        queue = MessageDeliveryQueue("s-1", api.sender("s-1"))
        temp_id = queue.enqueue("hi")
        await queue.join()
        assert queue.status_of(temp_id) == MessageStatus.FAILED

        monitor = ConnectivityMonitor(api, [queue], scheduler=RecordingScheduler())
        assert await monitor.check() is False
        state["online"] = True
        assert await monitor.check() is True
        await queue.join()

        assert queue.status_of(temp_id) == MessageStatus.SENT
        assert await monitor.check() is False

    async def test_start_and_stop_polling(self):
        api = mock_api(lambda request: httpx.Response(200, json={"status": "ok"}))
        monitor = ConnectivityMonitor(api, [], interval=0.01)

        monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert monitor.online is True
        await monitor.stop()


async def test_end_to_end_against_app(db, turn_service, scripted):
    """The queue delivers through the real endpoint and survives a resend."""
    scripted.outputs = [agent_reply("What brings you in?")]
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        session_id = (await http.post("/api/sessions", json={})).json()["id"]
        api = IntakeApiClient(client=http)
        queue = MessageDeliveryQueue(session_id, api.sender(session_id))

        temp_id = queue.enqueue("hello")
        await queue.join()
        assert queue.status_of(temp_id) == MessageStatus.SENT
        assert queue.messages[-1].text == "What brings you in?"

        # a resend of the same temp id is answered from storage
        again = await api.send_message(session_id, PendingMessage(temp_id=temp_id, content="hello"))
        assert again.message_id == queue.messages[0].id
        assert len(scripted.calls) == 1


async def test_fetch_history_against_app(db, turn_service, scripted):
    scripted.outputs = [agent_reply("What brings you in?")]
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        session_id = (await http.post("/api/sessions", json={})).json()["id"]
        api = IntakeApiClient(client=http)
        await api.send_message(session_id, PendingMessage(temp_id="temp-1", content="hello"))

        history = await api.fetch_history(session_id)

    assert [(m.role, m.text) for m in history] == [("user", "hello"), ("model", "What brings you in?")]
    assert all(m.id for m in history)
