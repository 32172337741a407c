"""
Repositories for notification writes and reference lookups.
"""

import logging
from collections.abc import Callable, Mapping
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobpipe.constants import ATTENDING_RSVP_STATUSES
from jobpipe.db.connection import get_session_context
from jobpipe.db.models import REFERENCE_MODELS, Base, Notification
from jobpipe.errors import DependencyMissingError
from jobpipe.types.events import NotificationData

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class NotificationRepository:
    """Writes notification records inside the caller's session."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, data: NotificationData) -> Notification:
        """
        Insert one notification.

        The row is flushed so constraint errors surface here; committing is left to the
        session scope.
        """
        now = datetime.now(timezone.utc)
        record = Notification(
            id=uuid4(),
            receiver=data.receiver,
            sender=data.sender,
            type=data.type,
            post=data.post,
            campaign=data.campaign,
            event=data.event,
            message=data.message,
            content=data.content,
            is_read=data.is_read,
            created_at=now,
            updated_at=now,
        )
        self._session.add(record)
        await self._session.flush()
        logger.debug(
            "Notification stored",
            extra={"notification_id": str(record.id), "receiver": data.receiver},
        )
        return record


class ReferenceRepository:
    """
    Read-only lookups used when a job payload was not enriched.

    Every lookup opens its own short session. A model missing from
    ``models`` means this process was deployed without it, which no retry
    can fix, so it raises :class:`DependencyMissingError`.
    """

    def __init__(
        self,
        session_scope: SessionScope = get_session_context,
        models: Mapping[str, type[Base]] | None = None,
    ):
        self._session_scope = session_scope
        self._models = REFERENCE_MODELS if models is None else models

    def get_model(self, name: str) -> type[Base]:
        model = self._models.get(name)
        if model is None:
            raise DependencyMissingError(f"{name} model not available")
        return model

    async def get_post_owner(self, post_id: str) -> str | None:
        """Author of a post, or None if the post no longer exists."""
        post_model = self.get_model("Post")
        async with self._session_scope() as session:
            result = await session.execute(
                select(post_model.user_id).where(post_model.id == post_id)
            )
            return result.scalar_one_or_none()

    async def get_event(self, event_id: str) -> Base | None:
        event_model = self.get_model("Event")
        async with self._session_scope() as session:
            return await session.get(event_model, event_id)

    async def get_attendee_ids(self, event_id: str) -> list[str]:
        """Users with a going or interested RSVP."""
        rsvp_model = self.get_model("EventRSVP")
        async with self._session_scope() as session:
            result = await session.execute(
                select(rsvp_model.user_id)
                .where(rsvp_model.event_id == event_id)
                .where(rsvp_model.status.in_(ATTENDING_RSVP_STATUSES))
            )
            return [str(user_id) for user_id in result.scalars().all()]

    async def get_campaign(self, campaign_id: str) -> Base | None:
        campaign_model = self.get_model("Campaign")
        async with self._session_scope() as session:
            return await session.get(campaign_model, campaign_id)

    async def get_donor_ids(self, campaign_id: str) -> list[str]:
        """Distinct donors of a campaign."""
        donation_model = self.get_model("Donation")
        async with self._session_scope() as session:
            result = await session.execute(
                select(donation_model.donor_id)
                .where(donation_model.campaign_id == campaign_id)
                .distinct()
            )
            return [str(donor_id) for donor_id in result.scalars().all()]
