"""
Retry, backoff and dead-letter policy.

The retry count travels in the ``x-retry-count`` transport header, never in
the job body. A retry republishes the original body as a new message with
incremented headers and then acknowledges the original delivery, so the
count is enforced even when the broker redelivers.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage

from jobpipe.constants import (
    DEATH_REASON_HEADER,
    ERROR_HEADER,
    ERROR_TYPE_HEADER,
    JSON_CONTENT_TYPE,
    MAX_ERROR_MESSAGE_LENGTH,
    ORIGINAL_QUEUE_HEADER,
    RETRY_COUNT_HEADER,
    DeathReason,
)
from jobpipe.errors import error_type_of, is_permanent_error
from jobpipe.observability.metrics import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)


def get_retry_count(message: AbstractIncomingMessage) -> int:
    """Read ``x-retry-count``; absent or malformed values count as 0."""
    value = (message.headers or {}).get(RETRY_COUNT_HEADER, 0)
    if isinstance(value, bytes):
        value = value.decode(errors="ignore")
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0
    return max(count, 0)


def next_headers(message: AbstractIncomingMessage) -> dict[str, Any]:
    """Headers for the next attempt: a new dict, the delivery is left untouched."""
    return {
        **(message.headers or {}),
        RETRY_COUNT_HEADER: get_retry_count(message) + 1,
    }


def _truncate(text: str) -> str:
    if len(text) <= MAX_ERROR_MESSAGE_LENGTH:
        return text
    return text[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."


def build_outbound(message: AbstractIncomingMessage, headers: dict[str, Any]) -> Message:
    """Copy a delivery into a new persistent message with the given headers."""
    return Message(
        body=message.body,
        headers=headers,
        content_type=message.content_type or JSON_CONTENT_TYPE,
        content_encoding=message.content_encoding,
        correlation_id=message.correlation_id,
        message_id=message.message_id,
        delivery_mode=DeliveryMode.PERSISTENT,
        timestamp=datetime.now(timezone.utc),
    )


async def reject(message: AbstractIncomingMessage) -> None:
    """``nack(requeue=False)`` unless the delivery was already settled."""
    if message.processed:
        return
    try:
        await message.nack(requeue=False)
    except Exception as e:
        logger.error("Failed to nack message", extra={"error": str(e)})


class RetryPolicy:
    """
    Per-pipeline retry policy.

    Args:
        queue_name: Queue the policy republishes to.
        max_retries: Retries allowed after the first delivery.
        retry_delay: Base delay in seconds for :meth:`retry_delay`.
        dead_letter_queue: Durable queue receiving exhausted or permanently
            failed messages. ``None`` discards them instead.
        metrics: Metrics collector.
    """

    def __init__(
        self,
        queue_name: str,
        *,
        max_retries: int,
        retry_delay: float,
        dead_letter_queue: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.queue_name = queue_name
        self.max_retries = max_retries
        self.base_delay = retry_delay
        self.dead_letter_queue = dead_letter_queue
        self._metrics = metrics or get_metrics()

    get_retry_count = staticmethod(get_retry_count)
    next_headers = staticmethod(next_headers)

    def should_retry(self, message: AbstractIncomingMessage, error: BaseException | None) -> bool:
        """False for permanent errors or once the retry budget is spent."""
        if is_permanent_error(error):
            return False
        return get_retry_count(message) < self.max_retries

    def retry_delay(self, retry_count: int) -> float:
        """
        Exponential backoff for the given attempt.

        Informational only: republished messages are delivered immediately.
        """
        return self.base_delay * (2 ** max(retry_count, 0))

    async def republish(
        self,
        channel: AbstractChannel,
        message: AbstractIncomingMessage,
        queue_name: str | None = None,
        updated_headers: dict[str, Any] | None = None,
    ) -> None:
        """
        Publish the body again with new headers, then ack the original.

        If any step fails the original is rejected without requeue and the
        error is re-raised, so a broken republish can never loop.
        """
        target = queue_name or self.queue_name
        headers = updated_headers if updated_headers is not None else next_headers(message)

        try:
            await channel.default_exchange.publish(
                build_outbound(message, headers),
                routing_key=target,
            )
            await message.ack()
        except Exception as e:
            logger.error(
                "Failed to republish message",
                extra={"queue": target, "error": str(e)},
            )
            await reject(message)
            raise

        logger.info(
            "Message republished for retry",
            extra={"queue": target, "retry_count": headers.get(RETRY_COUNT_HEADER)},
        )

    async def declare_dead_letter_queue(self, channel: AbstractChannel) -> None:
        """
        Declare the durable dead-letter queue, if there is one.

        Called once at startup on the publisher channel. A declare that clashes
        with an existing queue closes the channel it ran on, so it never runs
        on the consumer channel.
        """
        if self.dead_letter_queue is None:
            return
        await channel.declare_queue(self.dead_letter_queue, durable=True)
        logger.info("Dead-letter queue declared", extra={"queue": self.dead_letter_queue})

    async def dead_letter(
        self,
        channel: AbstractChannel,
        message: AbstractIncomingMessage,
        error: BaseException | None,
        reason: DeathReason | str,
    ) -> bool:
        """
        Remove a message from the main queue for good.

        With a dead-letter queue the body is published there with the death
        headers and the original is acked; otherwise it is rejected without
        requeue. A failed dead-letter publish also rejects.

        Returns:
            True if the message reached the dead-letter queue.
        """
        reason = str(reason)
        self._metrics.record_dead_letter(self.queue_name, reason)

        if self.dead_letter_queue is None:
            logger.warning(
                "Discarding message",
                extra={
                    "queue": self.queue_name,
                    "reason": reason,
                    "error": str(error) if error else None,
                },
            )
            await reject(message)
            return False

        headers = {
            **(message.headers or {}),
            DEATH_REASON_HEADER: reason,
            ORIGINAL_QUEUE_HEADER: self.queue_name,
            ERROR_HEADER: _truncate(str(error)) if error else "",
            ERROR_TYPE_HEADER: error_type_of(error),
        }

        try:
            await channel.default_exchange.publish(
                build_outbound(message, headers),
                routing_key=self.dead_letter_queue,
            )
            await message.ack()
        except Exception as e:
            logger.error(
                "Failed to publish to dead-letter queue",
                extra={"queue": self.dead_letter_queue, "error": str(e)},
            )
            await reject(message)
            return False

        logger.warning(
            "Message moved to dead-letter queue",
            extra={"queue": self.dead_letter_queue, "reason": reason},
        )
        return True
