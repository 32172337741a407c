"""
Generic consume loop.

Subscribes a handler to a durable queue with manual acknowledgment. The
handler classifies and settles each message itself; this loop only parses
the body and deals with exceptions that escape the handler.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from jobpipe.broker.connection import ConnectionManager
from jobpipe.broker.retry import get_retry_count, reject
from jobpipe.constants import MAX_CONSUME_ERROR_RETRIES
from jobpipe.errors import error_type_of, is_permanent_error
from jobpipe.observability.metrics import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any, AbstractIncomingMessage, AbstractChannel], Awaitable[Any]]


@dataclass
class Subscription:
    """An active queue subscription."""

    queue_name: str
    handler: MessageHandler
    requeue_on_error: bool
    queue: AbstractQueue
    consumer_tag: str


class Consumer:
    """
    Queue subscriptions sharing the manager's consumer channel.

    Every delivery runs as its own task inside aio-pika, so handlers for one
    queue run concurrently up to the channel prefetch. Subscriptions are
    restored after the connection manager reconnects, and when the broker
    closes the consumer channel under a live connection.
    """

    def __init__(self, manager: ConnectionManager, metrics: MetricsCollector | None = None):
        self._manager = manager
        self._metrics = metrics or get_metrics()
        self._subscriptions: dict[str, Subscription] = {}
        manager.add_reconnect_callback(self._resubscribe)

    @property
    def queue_names(self) -> list[str]:
        return list(self._subscriptions)

    async def consume(
        self,
        queue_name: str,
        handler: MessageHandler,
        requeue_on_error: bool = True,
    ) -> str:
        """
        Declare ``queue_name`` (durable) and subscribe ``handler`` to it.

        Args:
            queue_name: Queue to consume.
            handler: ``await handler(content, message, channel)`` per delivery.
            requeue_on_error: When False, escaping errors always discard.

        Returns:
            The consumer tag.
        """
        channel = await self._manager.get_consumer_channel()
        queue = await channel.declare_queue(queue_name, durable=True)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await self._process(queue_name, handler, requeue_on_error, channel, message)

        consumer_tag = await queue.consume(on_message, no_ack=False)
        self._subscriptions[queue_name] = Subscription(
            queue_name=queue_name,
            handler=handler,
            requeue_on_error=requeue_on_error,
            queue=queue,
            consumer_tag=consumer_tag,
        )

        logger.info(
            "Consumer started",
            extra={"queue": queue_name, "consumer_tag": consumer_tag},
        )
        return consumer_tag

    async def _process(
        self,
        queue_name: str,
        handler: MessageHandler,
        requeue_on_error: bool,
        channel: AbstractChannel,
        message: AbstractIncomingMessage,
    ) -> None:
        try:
            content = json.loads(message.body)
        except ValueError as e:
            # Covers JSONDecodeError and undecodable bytes
            logger.error(
                "Failed to parse message body",
                extra={"queue": queue_name, "error": str(e)},
            )
            self._metrics.record_message_outcome(queue_name, "discarded")
            await reject(message)
            return

        try:
            await handler(content, message, channel)
        except Exception as e:
            await self._handle_escaped_error(queue_name, requeue_on_error, message, e)

    async def _handle_escaped_error(
        self,
        queue_name: str,
        requeue_on_error: bool,
        message: AbstractIncomingMessage,
        error: Exception,
    ) -> None:
        retry_count = get_retry_count(message)
        log_extra = {
            "queue": queue_name,
            "error": str(error),
            "error_type": error_type_of(error),
            "retry_count": retry_count,
        }

        if message.processed:
            logger.error("Handler raised after settling the message", extra=log_extra)
            return

        if (
            is_permanent_error(error)
            or not requeue_on_error
            or retry_count >= MAX_CONSUME_ERROR_RETRIES
        ):
            logger.error("Handler error, discarding message", extra=log_extra)
            self._metrics.record_message_outcome(queue_name, "discarded")
            await reject(message)
            return

        # A requeue leaves x-retry-count untouched, so the ceiling above only
        # applies to messages that were republished with a count
        logger.warning("Handler error, requeueing message", extra=log_extra)
        self._metrics.record_message_outcome(queue_name, "requeued")
        try:
            await message.nack(requeue=True)
        except Exception as e:
            logger.error("Failed to requeue message", extra={"queue": queue_name, "error": str(e)})

    async def cancel(self, consumer_tag: str) -> None:
        """Stop the subscription with the given tag."""
        for queue_name, subscription in list(self._subscriptions.items()):
            if subscription.consumer_tag != consumer_tag:
                continue
            del self._subscriptions[queue_name]
            try:
                await subscription.queue.cancel(consumer_tag)
            except Exception as e:
                logger.warning(
                    "Failed to cancel consumer",
                    extra={"queue": queue_name, "consumer_tag": consumer_tag, "error": str(e)},
                )
            else:
                logger.info("Consumer cancelled", extra={"queue": queue_name})
            return

    async def cancel_all(self) -> None:
        """Stop every subscription."""
        for subscription in list(self._subscriptions.values()):
            await self.cancel(subscription.consumer_tag)

    async def _resubscribe(self) -> None:
        subscriptions = list(self._subscriptions.values())
        if not subscriptions:
            return

        logger.info(
            "Restoring consumers",
            extra={"queues": [s.queue_name for s in subscriptions]},
        )
        for subscription in subscriptions:
            await self.consume(
                subscription.queue_name,
                subscription.handler,
                requeue_on_error=subscription.requeue_on_error,
            )
