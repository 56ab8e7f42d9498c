"""HTTP client for the session endpoints, used as the delivery queue's sender."""

import asyncio
import logging
from datetime import UTC, datetime

import httpx

from intake.config import CONNECTIVITY_POLL_SECONDS, INTAKE_API_TIMEOUT_SECONDS, INTAKE_API_URL
from intake.models.delivery import PendingMessage, QueuedMessage, SendResult
from intake.services.scheduler import Scheduler, get_scheduler

logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """A message did not reach the server or was rejected by it."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _to_queued(raw: dict, status=None) -> QueuedMessage:
    return QueuedMessage(
        id=raw["id"],
        role=raw.get("role", "model"),
        text=raw.get("text", ""),
        images=raw.get("images") or None,
        timestamp=raw.get("timestamp") or datetime.now(UTC),
        status=status,
    )


class IntakeApiClient:
    def __init__(
        self,
        base_url: str = INTAKE_API_URL,
        timeout: float = INTAKE_API_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def send_message(self, session_id: str, message: PendingMessage) -> SendResult:
        """POST one queued message; the temp id doubles as the idempotency key."""
        body = {
            "content": message.content,
            "images": message.images or [],
            "clientMessageId": message.temp_id,
        }
        try:
            resp = await self._client.post(f"/api/sessions/{session_id}/messages", json=body)
        except httpx.TimeoutException:
            raise DeliveryError("Request timed out") from None
        except httpx.HTTPError as e:
            raise DeliveryError(f"Network error: {e}") from None

        if resp.status_code >= 400:
            try:
                payload = resp.json()
                detail = payload.get("details") or payload.get("detail") or payload.get("error")
            except ValueError:
                detail = resp.text
            raise DeliveryError(f"HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

        data = resp.json()
        user_message = data["userMessage"]
        if data.get("duplicate"):
            logger.info("Server already had message %s; using stored exchange", message.temp_id)
        return SendResult(
            message_id=user_message["id"],
            reply=_to_queued(data["aiMessage"]) if data.get("aiMessage") else None,
        )

    def sender(self, session_id: str):
        """Bind ``send_message`` to one session for ``MessageDeliveryQueue``."""
        async def send(message: PendingMessage) -> SendResult:
            return await self.send_message(session_id, message)
        return send

    async def fetch_history(self, session_id: str) -> list[QueuedMessage]:
        resp = await self._client.get(f"/api/sessions/{session_id}/messages")
        resp.raise_for_status()
        return [_to_queued(item) for item in resp.json()]

    async def is_reachable(self) -> bool:
        try:
            resp = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()


class ConnectivityMonitor:
    """Polls the server and flushes failed messages when it comes back."""

    def __init__(
        self,
        api: IntakeApiClient,
        queues: list,
        *,
        interval: float = CONNECTIVITY_POLL_SECONDS,
        scheduler: Scheduler | None = None,
    ):
        self.api = api
        self.queues = list(queues)
        self.interval = interval
        self.scheduler = scheduler or get_scheduler()
        self.online: bool | None = None
        self._task: asyncio.Task | None = None

    async def check(self) -> bool:
        """Probe once. Returns True when this probe saw offline -> online."""
        reachable = await self.api.is_reachable()
        came_back = reachable and self.online is False
        if reachable != self.online:
            logger.info("Intake API is %s", "reachable" if reachable else "unreachable")
        self.online = reachable
        if came_back:
            for queue in self.queues:
                queue.notify_online()
        return came_back

    async def run(self) -> None:
        while True:
            await self.check()
            await self.scheduler.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
