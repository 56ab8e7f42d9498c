from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"


class PendingMessage(BaseModel):
    temp_id: str
    content: str
    images: list[str] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = Field(default=0, ge=0)


class FailedMessage(PendingMessage):
    error: str
    last_attempt: datetime = Field(default_factory=lambda: datetime.now(UTC))


class QueuedMessage(BaseModel):
    """Entry as the caller displays it, optimistic until reconciled."""

    id: str
    temp_id: str | None = None
    role: str = "user"
    text: str
    images: list[str] | None = None
    timestamp: datetime
    status: MessageStatus | None = None
    error: str | None = None
    retry_count: int = 0


class QueueSnapshot(BaseModel):
    session_id: str
    pending_messages: list[PendingMessage] = Field(default_factory=list)
    failed_messages: list[FailedMessage] = Field(default_factory=list)
    permanently_failed_messages: list[FailedMessage] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SendResult(BaseModel):
    """Server acknowledgement for one delivered user message."""

    message_id: str
    reply: QueuedMessage | None = None
