"""
Worker process: consumes the mail and notification queues.

The worker owns every long-lived resource (broker connection, database
engine, Redis client, mail HTTP client, health server) and injects them into
the consumers. SIGTERM and SIGINT trigger a graceful shutdown.

Exit codes:
    0: Clean shutdown after a signal.
    1: Startup failure, broker unreachable after all reconnect attempts,
       or an unexpected crash.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Any

from jobpipe import __version__
from jobpipe.api.main import HealthServer, create_app
from jobpipe.api.routes.health import HealthReporter
from jobpipe.broker.connection import ConnectFactory, ConnectionManager, sanitize_url
from jobpipe.broker.consumer import Consumer
from jobpipe.config import Settings, get_settings
from jobpipe.db import close_db, init_db
from jobpipe.db.repository import ReferenceRepository
from jobpipe.mail.service import MailService
from jobpipe.notifications.handler import NotificationHandler
from jobpipe.notifications.service import NotificationService
from jobpipe.observability.logging import bind_context, setup_logging
from jobpipe.observability.metrics import MetricsCollector, setup_metrics
from jobpipe.observability.tracing import setup_tracing
from jobpipe.realtime import RealtimePublisher
from jobpipe.worker.consumers import (
    JobConsumer,
    create_mail_consumer,
    create_notification_consumer,
)

logger = logging.getLogger(__name__)


def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Log errors from tasks nobody awaited instead of letting them vanish."""
    error = context.get("exception")
    logger.error(
        "Unhandled error in event loop",
        extra={"loop_message": context.get("message")},
        exc_info=error if isinstance(error, BaseException) else None,
    )


class Worker:
    """
    Queue worker.

    Features:
    - One subscription per queue on a shared, prefetch-limited channel
    - Broker reconnect with backoff, consumers restored after reconnect
    - Periodic connection health log and an HTTP health endpoint
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        connect_factory: ConnectFactory | None = None,
        publisher: RealtimePublisher | None = None,
        mail_service: MailService | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._metrics = metrics

        self.manager = ConnectionManager(
            self._settings.rabbitmq_url,
            prefetch_count=self._settings.rabbitmq_prefetch_count,
            max_retries=self._settings.rabbitmq_max_retries,
            retry_delay_base=self._settings.rabbitmq_retry_delay_base,
            retry_delay_max=self._settings.rabbitmq_retry_delay_max,
            connection_timeout=self._settings.rabbitmq_connection_timeout,
            heartbeat=self._settings.rabbitmq_heartbeat,
            connect_factory=connect_factory,
            on_fatal=self._on_broker_fatal,
            metrics=metrics,
        )
        self.consumer = Consumer(self.manager, metrics=metrics)
        self.publisher = publisher or RealtimePublisher()
        self.mail_service = mail_service or MailService(settings=self._settings, metrics=metrics)

        self._stop_event = asyncio.Event()
        self._exit_code = 0
        self._health_server: HealthServer | None = None
        self._health_log_task: asyncio.Task | None = None
        self._stopped = False

    def build_consumers(self) -> list[JobConsumer]:
        notification_handler = NotificationHandler(
            NotificationService(self.publisher, metrics=self._metrics),
            ReferenceRepository(),
        )
        return [
            create_mail_consumer(self.mail_service, self._settings, self._metrics),
            create_notification_consumer(notification_handler, self._settings, self._metrics),
        ]

    async def start(self) -> None:
        """Open every resource and subscribe the consumers."""
        bind_context(worker_pid=os.getpid())
        logger.info(
            "Worker starting",
            extra={
                "version": __version__,
                "rabbitmq_url": sanitize_url(self._settings.rabbitmq_url),
                "prefetch": self._settings.rabbitmq_prefetch_count,
            },
        )

        await init_db()
        await self.publisher.connect()
        await self.manager.connect()

        publisher_channel = await self.manager.get_publisher_channel()
        for job_consumer in self.build_consumers():
            await job_consumer.policy.declare_dead_letter_queue(publisher_channel)
            await self.consumer.consume(job_consumer.queue_name, job_consumer)

        if self._settings.health_enabled:
            reporter = HealthReporter(self.manager, self.consumer, self.publisher)
            self._health_server = HealthServer(create_app(reporter))
            await self._health_server.start()

        self._health_log_task = asyncio.create_task(self._health_log_loop())

        logger.info(
            "Worker started, waiting for messages",
            extra={"queues": self.consumer.queue_names},
        )

    @property
    def exit_code(self) -> int:
        return self._exit_code

    async def wait(self) -> int:
        """Block until shutdown is requested; returns the exit code."""
        await self._stop_event.wait()
        return self._exit_code

    def request_shutdown(self, reason: str, exit_code: int = 0) -> None:
        """Ask the worker to stop. Safe to call more than once."""
        self._exit_code = max(self._exit_code, exit_code)
        if self._stop_event.is_set():
            return
        logger.info("Shutdown requested", extra={"reason": reason, "exit_code": exit_code})
        self._stop_event.set()

    def _on_broker_fatal(self) -> None:
        logger.critical("Broker unreachable, no job processing is possible")
        self.request_shutdown("broker_unreachable", exit_code=1)

    async def stop(self) -> None:
        """
        Graceful shutdown.

        Stops consuming first so no new deliveries arrive, then closes the
        broker, HTTP clients, Redis and the database. Unacked deliveries
        return to their queue when the channel closes.
        """
        if self._stopped:
            return
        self._stopped = True
        logger.info("Worker stopping")

        if self._health_log_task is not None:
            self._health_log_task.cancel()
            try:
                await self._health_log_task
            except asyncio.CancelledError:
                pass

        steps = [
            ("consumers", self.consumer.cancel_all),
            ("broker", self.manager.disconnect),
            ("mail client", self.mail_service.close),
            ("redis", self.publisher.close),
            ("database", close_db),
        ]
        if self._health_server is not None:
            steps.insert(2, ("health server", self._health_server.stop))

        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error(f"Error closing {name}", extra={"error": str(e)})

        logger.info("Worker stopped")

    async def _health_log_loop(self) -> None:
        interval = self._settings.health_log_interval_seconds
        while True:
            await asyncio.sleep(interval)
            health = self.manager.health()
            if health.connected and health.has_consumer_channel:
                logger.info("Broker connection healthy", extra=health.model_dump(mode="json"))
            else:
                logger.warning("Broker connection unhealthy", extra=health.model_dump(mode="json"))


async def run_async(worker: Worker | None = None) -> int:
    """Run the worker until a signal or a fatal error; returns the exit code."""
    setup_logging()
    setup_metrics()
    setup_tracing()

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_loop_exception)

    worker = worker or Worker()

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, worker.request_shutdown, sig.name)

    try:
        await worker.start()
        exit_code = await worker.wait()
    except Exception:
        logger.exception("Worker failed")
        exit_code = 1
    finally:
        await worker.stop()
        for sig in signals:
            loop.remove_signal_handler(sig)

    return exit_code


def run() -> None:
    """Run the worker."""
    sys.exit(asyncio.run(run_async()))


if __name__ == "__main__":
    run()
