"""
Real-time fan-out of new notifications over Redis pub/sub.

The API servers subscribe to the channel and forward each event to the
recipient's open sockets. Publishing is best-effort: ``publish`` never
raises, a lost event only means the client sees the notification on its
next fetch.
"""

import logging

import redis.asyncio as redis

from jobpipe.config import get_settings
from jobpipe.types.events import NotificationEvent

logger = logging.getLogger(__name__)


class RealtimePublisher:
    """Publishes :class:`NotificationEvent` messages to a Redis channel."""

    def __init__(
        self,
        url: str | None = None,
        channel: str | None = None,
        client: redis.Redis | None = None,
    ):
        settings = get_settings()
        self.url = url or settings.redis_url
        self.channel = channel or settings.notification_channel
        self._connect_timeout = settings.redis_connect_timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self._client is not None or bool(self.url)

    async def connect(self) -> None:
        """Create the client and verify it with PING. No-op without a URL."""
        if self._client is not None:
            return
        if not self.url:
            logger.warning("REDIS_URL not set, real-time notifications disabled")
            return

        self._client = redis.from_url(
            self.url,
            decode_responses=True,
            socket_connect_timeout=self._connect_timeout,
            health_check_interval=30,
        )
        try:
            await self._client.ping()
        except redis.RedisError as e:
            # The worker still runs without Redis; records are persisted either way
            logger.warning("Redis not reachable at startup", extra={"error": str(e)})
        else:
            logger.info("Redis connection initialized", extra={"channel": self.channel})

    async def publish(self, event: NotificationEvent) -> bool:
        """
        Publish one event.

        Returns:
            True if Redis accepted the message. Failures are logged and
            reported as False.
        """
        if self._client is None:
            return False

        try:
            await self._client.publish(self.channel, event.to_json())
        except Exception as e:
            logger.error(
                "Failed to publish notification event",
                extra={"recipient_id": event.recipient_id, "error": str(e)},
            )
            return False
        return True

    async def ping(self) -> bool:
        """Health check."""
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except Exception as e:
            logger.warning("Redis health check failed", extra={"error": str(e)})
            return False

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as e:
            logger.debug("Error closing Redis client", extra={"error": str(e)})
        self._client = None
        logger.info("Redis connection closed")
