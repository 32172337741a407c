"""
Result and event type definitions for handlers and real-time fan-out.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jobpipe.constants import NotificationKind


class HandlerResult(BaseModel):
    """
    Result of a handler invocation.

    ``success=False`` with an ``error`` code is a soft failure (e.g. the
    referenced post was deleted). It is acknowledged, never retried.
    """

    success: bool
    skipped: bool = False
    count: int | None = None
    error: str | None = None
    message_id: str | None = None

    @classmethod
    def ok(cls, count: int | None = None, **kwargs: Any) -> "HandlerResult":
        return cls(success=True, count=count, **kwargs)

    @classmethod
    def skip(cls) -> "HandlerResult":
        return cls(success=True, skipped=True)

    @classmethod
    def soft_failure(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error)


class NotificationData(BaseModel):
    """Input for creating one notification record."""

    receiver: str
    sender: str | None = None
    type: NotificationKind
    post: str | None = None
    campaign: str | None = None
    event: str | None = None
    message: str | None = None
    content: str | None = None
    is_read: bool = False


class NotificationEvent(BaseModel):
    """
    Message published on the real-time channel.

    Connected clients subscribe per recipient; the database record remains
    the source of truth.
    """

    recipient_id: str = Field(serialization_alias="recipientId")
    notification: dict[str, Any]

    @classmethod
    def from_record(
        cls,
        record_id: str,
        data: NotificationData,
        created_at: datetime | None,
    ) -> "NotificationEvent":
        """Build the published event from a persisted notification."""
        return cls(
            recipient_id=data.receiver,
            notification={
                "_id": record_id,
                "type": data.type.value,
                "message": data.message,
                "content": data.content,
                "sender": data.sender,
                "post": data.post,
                "campaign": data.campaign,
                "event": data.event,
                "is_read": data.is_read,
                "createdAt": created_at.isoformat() if created_at else None,
            },
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
