"""Client-side delivery of outgoing patient messages.

Each conversation gets one ``MessageDeliveryQueue``. Messages show up
optimistically as "sending", then go out one at a time in the order they were
written. A message that fails waits for an explicit ``retry`` or a
reconnection; a message whose retries are used up becomes permanently failed
and keeps its content for a manual resend.

Every change is mirrored to a ``QueueStorage``. A queue built for the same
session id later picks the snapshot up and re-sends anything that was still
pending. The server de-duplicates on the temporary id, so a message that
actually arrived before a crash is not processed twice.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from intake.client.storage import QueueStorage
from intake.config import DELIVERY_MAX_RETRIES
from intake.models.delivery import (
    FailedMessage,
    MessageStatus,
    PendingMessage,
    QueuedMessage,
    QueueSnapshot,
    SendResult,
)

logger = logging.getLogger(__name__)

SendFn = Callable[[PendingMessage], Awaitable[SendResult]]


def generate_temp_id() -> str:
    return f"temp-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class MessageDeliveryQueue:
    def __init__(
        self,
        session_id: str,
        send: SendFn,
        *,
        storage: QueueStorage | None = None,
        max_retries: int = DELIVERY_MAX_RETRIES,
        on_retry_exhausted: Callable[[str], None] | None = None,
        on_change: Callable[[list[QueuedMessage]], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self.max_retries = max_retries
        self._send = send
        self._storage = storage
        self._on_retry_exhausted = on_retry_exhausted
        self._on_change = on_change

        self._queue: deque[PendingMessage] = deque()
        self._pending: dict[str, PendingMessage] = {}
        self._failed: dict[str, FailedMessage] = {}
        self._exhausted: dict[str, FailedMessage] = {}
        self._messages: list[QueuedMessage] = []
        self._worker: asyncio.Task | None = None
        self._closed = False

        self._restore()

    # --- state views ---------------------------------------------------

    @property
    def messages(self) -> list[QueuedMessage]:
        return list(self._messages)

    def pending(self) -> list[PendingMessage]:
        return list(self._pending.values())

    def failed(self) -> list[FailedMessage]:
        return list(self._failed.values())

    def permanently_failed(self) -> list[FailedMessage]:
        return list(self._exhausted.values())

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def has_failed(self) -> bool:
        return bool(self._failed)

    def status_of(self, temp_id: str) -> MessageStatus | None:
        if temp_id in self._pending:
            return MessageStatus.SENDING
        if temp_id in self._failed:
            return MessageStatus.FAILED
        if temp_id in self._exhausted:
            return MessageStatus.PERMANENTLY_FAILED
        entry = self._find(temp_id)
        return entry.status if entry else None

    def has_reached_max_retries(self, temp_id: str) -> bool:
        message = self._failed.get(temp_id) or self._exhausted.get(temp_id)
        return message is not None and message.retry_count >= self.max_retries

    # --- operations ----------------------------------------------------

    def enqueue(self, content: str, images: list[str] | None = None) -> str:
        """Queue a new message and return its temporary id without waiting."""
        message = PendingMessage(
            temp_id=generate_temp_id(),
            content=content,
            images=list(images) if images else None,
        )
        self._pending[message.temp_id] = message
        self._messages.append(QueuedMessage(
            id=message.temp_id,
            temp_id=message.temp_id,
            text=message.content,
            images=message.images,
            timestamp=message.timestamp,
            status=MessageStatus.SENDING,
        ))
        self._queue.append(message)
        self._changed()
        self._ensure_worker()
        return message.temp_id

    def retry(self, temp_id: str) -> bool:
        """Re-arm one failed message. False if unknown or out of retries."""
        failed = self._failed.get(temp_id)
        if failed is None:
            return False

        if failed.retry_count >= self.max_retries:
            self._exhaust(failed)
            return False

        del self._failed[temp_id]
        message = PendingMessage(
            temp_id=failed.temp_id,
            content=failed.content,
            images=failed.images,
            timestamp=failed.timestamp,
            retry_count=failed.retry_count + 1,
        )
        self._pending[temp_id] = message
        self._update(temp_id, status=MessageStatus.SENDING, error=None, retry_count=message.retry_count)
        self._queue.append(message)
        logger.info("Retrying message %s (attempt %d/%d)", temp_id, message.retry_count, self.max_retries)
        self._changed()
        self._ensure_worker()
        return True

    def retry_all_failed(self) -> int:
        """Retry every failed message, oldest first. Returns how many were re-armed."""
        ordered = sorted(self._failed.values(), key=lambda m: m.timestamp)
        return sum(1 for message in ordered if self.retry(message.temp_id))

    def notify_online(self) -> int:
        """Connectivity came back: retry everything that failed."""
        if not self._failed:
            return 0
        logger.info("Connection restored; retrying %d failed message(s)", len(self._failed))
        return self.retry_all_failed()

    def discard(self, temp_id: str) -> bool:
        """Drop a failed or permanently failed message the user gave up on."""
        removed = self._failed.pop(temp_id, None) or self._exhausted.pop(temp_id, None)
        if removed is None:
            return False
        self._messages = [m for m in self._messages if m.temp_id != temp_id]
        self._changed()
        return True

    def initialize_messages(self, messages: list[QueuedMessage]) -> None:
        """Seed the view with server history, keeping local unsent entries after it."""
        local = [m for m in self._messages if m.status in (
            MessageStatus.SENDING, MessageStatus.FAILED, MessageStatus.PERMANENTLY_FAILED,
        )]
        self._messages = list(messages) + local
        self._notify()

    def clear(self) -> None:
        self._queue.clear()
        self._pending.clear()
        self._failed.clear()
        self._exhausted.clear()
        self._messages = []
        self._changed()

    async def join(self) -> None:
        """Wait until the send queue is empty."""
        self._ensure_worker()
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    async def close(self) -> None:
        """Stop the worker. Unsent messages stay in storage for the next queue."""
        self._closed = True
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    # --- worker --------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._closed or not self._queue:
            return
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next enqueue, retry or join starts the worker
            return
        self._worker = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            message = self._queue.popleft()
            if self._pending.get(message.temp_id) is not message:
                continue
            await self._deliver(message)

    async def _deliver(self, message: PendingMessage) -> None:
        try:
            result = await self._send(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Delivery of %s failed: %s", message.temp_id, e)
            self._mark_failed(message, str(e) or type(e).__name__)
        else:
            self._mark_sent(message, result)

    def _mark_sent(self, message: PendingMessage, result: SendResult) -> None:
        self._pending.pop(message.temp_id, None)
        self._update(message.temp_id, id=result.message_id, status=MessageStatus.SENT, error=None)
        if result.reply is not None and self._find_by_id(result.reply.id) is None:
            self._messages.append(result.reply)
        self._changed()

    def _mark_failed(self, message: PendingMessage, error: str) -> None:
        self._pending.pop(message.temp_id, None)
        self._failed[message.temp_id] = FailedMessage(
            **message.model_dump(),
            error=error,
            last_attempt=datetime.now(UTC),
        )
        self._update(message.temp_id, status=MessageStatus.FAILED, error=error)
        self._changed()

    def _exhaust(self, failed: FailedMessage) -> None:
        error = f"Max retries ({self.max_retries}) reached"
        del self._failed[failed.temp_id]
        self._exhausted[failed.temp_id] = failed.model_copy(update={"error": error})
        self._update(failed.temp_id, status=MessageStatus.PERMANENTLY_FAILED, error=error)
        logger.warning("Message %s permanently failed after %d retries", failed.temp_id, failed.retry_count)
        self._changed()
        if self._on_retry_exhausted is not None:
            self._call("on_retry_exhausted", self._on_retry_exhausted, failed.temp_id)

    # --- view + persistence ---------------------------------------------

    def _find(self, temp_id: str) -> QueuedMessage | None:
        for entry in self._messages:
            if entry.temp_id == temp_id:
                return entry
        return None

    def _find_by_id(self, message_id: str) -> QueuedMessage | None:
        for entry in self._messages:
            if entry.id == message_id:
                return entry
        return None

    def _update(self, temp_id: str, **changes) -> None:
        for idx, entry in enumerate(self._messages):
            if entry.temp_id == temp_id:
                self._messages[idx] = entry.model_copy(update=changes)
                return

    def _snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            session_id=self.session_id,
            pending_messages=list(self._pending.values()),
            failed_messages=list(self._failed.values()),
            permanently_failed_messages=list(self._exhausted.values()),
        )

    def _persist(self) -> None:
        if self._storage is None:
            return
        try:
            if self._pending or self._failed or self._exhausted:
                self._storage.save(self.session_id, self._snapshot())
            else:
                self._storage.clear(self.session_id)
        except Exception as e:
            logger.warning("Failed to mirror message queue for session %s: %s", self.session_id, e)

    def _notify(self) -> None:
        if self._on_change is not None:
            self._call("on_change", self._on_change, self.messages)

    def _call(self, name: str, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback failed for session %s", name, self.session_id)

    def _changed(self) -> None:
        self._persist()
        self._notify()

    def _restore(self) -> None:
        if self._storage is None:
            return
        try:
            snapshot = self._storage.load(self.session_id)
        except Exception as e:
            logger.warning("Failed to load message queue for session %s: %s", self.session_id, e)
            return
        if snapshot is None:
            return

        for message in sorted(snapshot.pending_messages, key=lambda m: m.timestamp):
            self._pending[message.temp_id] = message
            self._queue.append(message)
            self._messages.append(_view(message, MessageStatus.SENDING))
        for message in snapshot.failed_messages:
            self._failed[message.temp_id] = message
            self._messages.append(_view(message, MessageStatus.FAILED, message.error))
        for message in snapshot.permanently_failed_messages:
            self._exhausted[message.temp_id] = message
            self._messages.append(_view(message, MessageStatus.PERMANENTLY_FAILED, message.error))

        self._messages.sort(key=lambda m: m.timestamp)
        logger.info(
            "Restored message queue for session %s: %d pending, %d failed",
            self.session_id, len(self._pending), len(self._failed),
        )
        self._ensure_worker()


def _view(message: PendingMessage, status: MessageStatus, error: str | None = None) -> QueuedMessage:
    return QueuedMessage(
        id=message.temp_id,
        temp_id=message.temp_id,
        text=message.content,
        images=message.images,
        timestamp=message.timestamp,
        status=status,
        error=error,
        retry_count=message.retry_count,
    )
