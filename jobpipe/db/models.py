"""
SQLAlchemy database models.

``Notification`` is written by the worker. The remaining tables belong to the
main application and are only read here, to enrich jobs whose payload lacks
the owner or attendee ids.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobpipe.constants import NotificationKind

# Application object ids (users, posts, events, ...) are opaque strings
ID_LENGTH = 64


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Notification(Base):
    """
    A notification shown to one user.

    The record is the source of truth; the real-time publish that follows an
    insert is only a delivery optimization.
    """

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    receiver: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    sender: Mapped[str | None] = mapped_column(String(ID_LENGTH), nullable=True)

    type: Mapped[NotificationKind] = mapped_column(
        Enum(
            NotificationKind,
            name="notification_type",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    # Optional references to the object the notification is about
    post: Mapped[str | None] = mapped_column(String(ID_LENGTH), nullable=True)
    campaign: Mapped[str | None] = mapped_column(String(ID_LENGTH), nullable=True)
    event: Mapped[str | None] = mapped_column(String(ID_LENGTH), nullable=True)

    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # Unread list per user
        Index("ix_notifications_receiver_read", "receiver", "is_read", "created_at"),
        # Per-type feed per user
        Index("ix_notifications_receiver_type", "receiver", "type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"Notification(id={self.id}, receiver={self.receiver}, type={self.type})"


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    content_text: Mapped[str | None] = mapped_column(Text, nullable=True)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)


class EventRSVP(Base):
    __tablename__ = "event_rsvps"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    event_id: Mapped[str] = mapped_column(
        String(ID_LENGTH), ForeignKey("events.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    # going, interested, not_going
    status: Mapped[str] = mapped_column(String(32), nullable=False)


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)


class Donation(Base):
    __tablename__ = "donations"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(
        String(ID_LENGTH), ForeignKey("campaigns.id"), nullable=False, index=True
    )
    donor_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)


# Reference models available to handlers in this process, by name
REFERENCE_MODELS: dict[str, type[Base]] = {
    "Post": Post,
    "Event": Event,
    "EventRSVP": EventRSVP,
    "Campaign": Campaign,
    "Donation": Donation,
}
