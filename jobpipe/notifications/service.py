"""
Notification service: persist a record, then fan it out in real time.
"""

import asyncio
import logging
from collections.abc import Sequence

from jobpipe.constants import SPAN_CREATE_NOTIFICATION
from jobpipe.db.connection import get_session_context
from jobpipe.db.models import Notification
from jobpipe.db.repository import NotificationRepository, SessionScope
from jobpipe.observability.metrics import MetricsCollector, get_metrics
from jobpipe.observability.tracing import job_span
from jobpipe.realtime import RealtimePublisher
from jobpipe.types.events import NotificationData, NotificationEvent

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Creates notification records.

    The database write is the source of truth and its errors propagate to
    the handler. The real-time publish afterwards is best-effort.
    """

    def __init__(
        self,
        publisher: RealtimePublisher,
        session_scope: SessionScope = get_session_context,
        metrics: MetricsCollector | None = None,
    ):
        self._publisher = publisher
        self._session_scope = session_scope
        self._metrics = metrics or get_metrics()

    async def create(self, data: NotificationData) -> Notification:
        """Insert one notification, commit, then publish it for the receiver."""
        with job_span(SPAN_CREATE_NOTIFICATION, receiver=data.receiver, kind=data.type.value):
            async with self._session_scope() as session:
                record = await NotificationRepository(session).create(data)

            event = NotificationEvent.from_record(str(record.id), data, record.created_at)
            published = await self._publisher.publish(event)

        self._metrics.record_notification(data.type.value, published)
        logger.debug(
            "Notification created",
            extra={
                "notification_id": str(record.id),
                "receiver": data.receiver,
                "kind": data.type.value,
                "published": published,
            },
        )
        return record

    async def create_many(self, items: Sequence[NotificationData]) -> list[Notification]:
        """Create one record per item concurrently."""
        return list(await asyncio.gather(*(self.create(item) for item in items)))
