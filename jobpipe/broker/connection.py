"""
RabbitMQ connection management.

One ``ConnectionManager`` is created by the process root and injected into the
producer and the consumers. It owns exactly one connection, one consumer
channel (with prefetch) and one publisher channel, and reconnects with
exponential backoff when the broker goes away.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection

from jobpipe.config import get_settings
from jobpipe.constants import RECONNECT_JITTER_RATIO, ConnectionState
from jobpipe.errors import BrokerShuttingDownError
from jobpipe.observability.metrics import MetricsCollector, get_metrics
from jobpipe.types.api import BrokerHealth

logger = logging.getLogger(__name__)

ConnectFactory = Callable[..., Awaitable[AbstractConnection]]
ReconnectCallback = Callable[[], Awaitable[None]]


def calculate_backoff_delay(
    attempt: int,
    base: float,
    max_delay: float,
    jitter_ratio: float = RECONNECT_JITTER_RATIO,
) -> float:
    """
    Exponential backoff with jitter.

    ``min(base * 2**attempt, max_delay)`` plus up to ``jitter_ratio`` of that
    value at random.
    """
    delay = min(base * (2**attempt), max_delay)
    return delay + random.random() * jitter_ratio * delay


def sanitize_url(url: str) -> str:
    """Hide the password of a broker URL for logging."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = f"{parts.username}:***@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _default_fatal() -> None:
    raise SystemExit(1)


class ConnectionManager:
    """
    Owner of the broker connection and channels.

    Features:
    - Idempotent ``connect()``; concurrent callers share one in-flight attempt
    - Hard connection timeout and heartbeat
    - Exponential backoff reconnect with jitter, capped attempts, fatal exit
    - Cached consumer channel with prefetch, cached publisher channel
    - Reconnect callbacks so consumers can re-subscribe
    - Graceful shutdown
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        prefetch_count: int | None = None,
        max_retries: int | None = None,
        retry_delay_base: float | None = None,
        retry_delay_max: float | None = None,
        connection_timeout: float | None = None,
        heartbeat: int | None = None,
        connect_factory: ConnectFactory | None = None,
        on_fatal: Callable[[], None] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the manager. Nothing is opened until ``connect()``.

        Args:
            url: AMQP URL. Defaults to ``RABBITMQ_URL``.
            prefetch_count: Unacknowledged messages per consumer channel.
            max_retries: Consecutive failed reconnects before ``on_fatal`` runs.
            retry_delay_base: Backoff base in seconds.
            retry_delay_max: Backoff cap in seconds.
            connection_timeout: Seconds before a connect attempt is abandoned.
            heartbeat: AMQP heartbeat in seconds.
            connect_factory: Coroutine function opening a connection
                (``aio_pika.connect`` by default).
            on_fatal: Called when reconnect attempts are exhausted.
                Defaults to exiting the process with status 1.
            metrics: Metrics collector.
        """
        settings = get_settings()

        self.url = url or settings.rabbitmq_url
        self.prefetch_count = prefetch_count or settings.rabbitmq_prefetch_count
        self.max_retries = max_retries if max_retries is not None else settings.rabbitmq_max_retries
        self.retry_delay_base = (
            retry_delay_base if retry_delay_base is not None else settings.rabbitmq_retry_delay_base
        )
        self.retry_delay_max = (
            retry_delay_max if retry_delay_max is not None else settings.rabbitmq_retry_delay_max
        )
        self.connection_timeout = connection_timeout or settings.rabbitmq_connection_timeout
        self.heartbeat = heartbeat or settings.rabbitmq_heartbeat

        self._connect_factory = connect_factory or aio_pika.connect
        self._on_fatal = on_fatal or _default_fatal
        self._metrics = metrics or get_metrics()

        self._state = ConnectionState.DISCONNECTED
        self._connection: AbstractConnection | None = None
        self._consumer_channel: AbstractChannel | None = None
        self._publisher_channel: AbstractChannel | None = None
        self._connect_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._ever_connected = False
        self._channel_lock = asyncio.Lock()
        self._reconnect_callbacks: list[ReconnectCallback] = []
        self._recovery_task: asyncio.Task | None = None
        self._recovery_requested = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    @property
    def is_shutting_down(self) -> bool:
        return self._state is ConnectionState.SHUTTING_DOWN

    def backoff_delay(self, attempt: int) -> float:
        """Reconnect delay for the given zero-based attempt."""
        return calculate_backoff_delay(attempt, self.retry_delay_base, self.retry_delay_max)

    def health(self) -> BrokerHealth:
        """Pure read of connection state for liveness checks."""
        return BrokerHealth(
            connected=self.is_connected,
            has_consumer_channel=self._channel_alive(self._consumer_channel),
            reconnect_attempts=self._reconnect_attempts,
            is_connecting=self._connect_task is not None,
            state=self._state,
        )

    def add_reconnect_callback(self, callback: ReconnectCallback) -> None:
        """
        Register a coroutine function to run after every successful reconnect.

        Callbacks also run when the broker closes the consumer channel while the
        connection stays up, since every subscription on it is gone.
        """
        self._reconnect_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> AbstractConnection:
        """
        Return the live connection, opening one if needed.

        Concurrent callers await the same in-flight attempt instead of
        starting their own.

        Raises:
            BrokerShuttingDownError: If ``disconnect()`` was called.
            Exception: Whatever the failed attempt raised. A reconnect has
                already been scheduled when this propagates.
        """
        if self.is_connected:
            return self._connection

        if self.is_shutting_down:
            raise BrokerShuttingDownError("Cannot connect: application is shutting down")

        if self._connect_task is None:
            self._connect_task = asyncio.create_task(self._open_connection())

        return await asyncio.shield(self._connect_task)

    async def _open_connection(self) -> AbstractConnection:
        self._set_state(ConnectionState.CONNECTING)
        logger.info(
            "Connecting to RabbitMQ",
            extra={"url": sanitize_url(self.url), "attempt": self._reconnect_attempts + 1},
        )

        try:
            connection = await asyncio.wait_for(
                self._connect_factory(self.url, heartbeat=self.heartbeat),
                timeout=self.connection_timeout,
            )
        except Exception as e:
            logger.error(
                "Failed to connect to RabbitMQ",
                extra={"error": str(e) or type(e).__name__, "timeout": self.connection_timeout},
            )
            self._connection = None
            if not self.is_shutting_down:
                self._set_state(ConnectionState.DISCONNECTED)
                self._schedule_reconnect()
            raise
        finally:
            self._connect_task = None

        if self.is_shutting_down:
            await self._close_quietly(connection, "connection")
            raise BrokerShuttingDownError("Shutdown started while connecting")

        connection.close_callbacks.add(self._on_connection_closed)
        self._connection = connection
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to RabbitMQ")

        if self._ever_connected:
            self._request_recovery()
        self._ever_connected = True

        return connection

    def _on_connection_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if sender is not self._connection:
            return

        self._connection = None
        self._consumer_channel = None
        self._publisher_channel = None

        if self.is_shutting_down:
            return

        logger.warning(
            "RabbitMQ connection closed",
            extra={"reason": str(exc) if exc else "closed by broker"},
        )
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Schedule one reconnect attempt; at most one is ever pending."""
        if self.is_shutting_down or self._reconnect_task is not None:
            return

        if self._reconnect_attempts >= self.max_retries:
            logger.critical(
                "Max RabbitMQ reconnection attempts reached",
                extra={"max_retries": self.max_retries},
            )
            self._on_fatal()
            return

        delay = self.backoff_delay(self._reconnect_attempts)
        self._reconnect_attempts += 1
        self._metrics.record_reconnect_attempt()

        logger.warning(
            "Reconnecting to RabbitMQ",
            extra={
                "delay_seconds": round(delay, 3),
                "attempt": self._reconnect_attempts,
                "max_retries": self.max_retries,
            },
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None

        if self.is_shutting_down:
            return

        try:
            await self.connect()
        except Exception:
            # connect() logged the failure and scheduled the next attempt
            logger.debug("Reconnect attempt failed", exc_info=True)

    def _request_recovery(self) -> None:
        """Run the reconnect callbacks, or once more if they are already running."""
        if not self._reconnect_callbacks or self.is_shutting_down:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            self._recovery_requested = True
            return
        self._recovery_task = asyncio.get_running_loop().create_task(
            self._run_reconnect_callbacks()
        )

    async def _run_reconnect_callbacks(self) -> None:
        while True:
            self._recovery_requested = False
            for callback in list(self._reconnect_callbacks):
                try:
                    await callback()
                except Exception:
                    logger.exception("Reconnect callback failed")
            if not self._recovery_requested or self.is_shutting_down:
                return
            await asyncio.sleep(self.retry_delay_base)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        self._metrics.set_broker_connected(state is ConnectionState.CONNECTED)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    @staticmethod
    def _channel_alive(channel: AbstractChannel | None) -> bool:
        return channel is not None and not channel.is_closed

    async def get_consumer_channel(self) -> AbstractChannel:
        """
        Return the cached consumer channel or open one with the prefetch limit.

        The prefetch count bounds how many unacknowledged messages this
        process holds at once across all consumers on the channel.
        """
        if self._channel_alive(self._consumer_channel):
            return self._consumer_channel

        async with self._channel_lock:
            if self._channel_alive(self._consumer_channel):
                return self._consumer_channel

            connection = await self.connect()
            try:
                channel = await connection.channel()
                await channel.set_qos(prefetch_count=self.prefetch_count)
            except Exception as e:
                logger.error("Failed to create consumer channel", extra={"error": str(e)})
                self._consumer_channel = None
                raise

            channel.close_callbacks.add(self._on_consumer_channel_closed)
            self._consumer_channel = channel
            logger.info("Consumer channel created", extra={"prefetch": self.prefetch_count})
            return channel

    async def get_publisher_channel(self) -> AbstractChannel:
        """Return the cached publisher channel or open one."""
        if self._channel_alive(self._publisher_channel):
            return self._publisher_channel

        async with self._channel_lock:
            if self._channel_alive(self._publisher_channel):
                return self._publisher_channel

            connection = await self.connect()
            try:
                channel = await connection.channel()
            except Exception as e:
                logger.error("Failed to create publisher channel", extra={"error": str(e)})
                self._publisher_channel = None
                raise

            channel.close_callbacks.add(self._on_publisher_channel_closed)
            self._publisher_channel = channel
            logger.info("Publisher channel created")
            return channel

    def _on_consumer_channel_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if sender is not self._consumer_channel:
            return

        self._consumer_channel = None
        if self.is_shutting_down:
            return

        logger.warning(
            "Consumer channel closed",
            extra={"reason": str(exc) if exc else "closed"},
        )
        # A dead connection is restored by the reconnect path instead
        if self.is_connected:
            self._request_recovery()

    def _on_publisher_channel_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if sender is self._publisher_channel:
            self._publisher_channel = None
            if not self.is_shutting_down:
                logger.warning(
                    "Publisher channel closed",
                    extra={"reason": str(exc) if exc else "closed"},
                )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def disconnect(self) -> None:
        """
        Graceful shutdown.

        Enters SHUTTING_DOWN (no further reconnects), cancels any pending
        reconnect, then closes channels and the connection. Close errors are
        logged and ignored.
        """
        self._set_state(ConnectionState.SHUTTING_DOWN)
        logger.info("RabbitMQ graceful shutdown initiated")

        for task in (self._reconnect_task, self._connect_task, self._recovery_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._reconnect_task = None
        self._connect_task = None
        self._recovery_task = None

        consumer_channel, self._consumer_channel = self._consumer_channel, None
        publisher_channel, self._publisher_channel = self._publisher_channel, None
        connection, self._connection = self._connection, None

        await self._close_quietly(consumer_channel, "consumer channel")
        await self._close_quietly(publisher_channel, "publisher channel")
        await self._close_quietly(connection, "connection")

        logger.info("RabbitMQ graceful shutdown completed")

    @staticmethod
    async def _close_quietly(resource: Any, name: str) -> None:
        if resource is None or resource.is_closed:
            return
        try:
            await resource.close()
        except Exception as e:
            logger.debug(f"Error closing {name}", extra={"error": str(e)})
