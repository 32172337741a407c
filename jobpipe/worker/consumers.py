"""
Job consumers: bind a job handler and a retry policy to a queue.

A ``JobConsumer`` is the message handler given to the consume loop. It
settles every delivery itself:

- invalid job: dead-lettered at once, never retried
- handler success or soft failure: ack
- retryable error with budget left: republish with ``x-retry-count + 1``
- permanent error or exhausted budget: dead-letter (or discard)
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage
from pydantic import ValidationError

from jobpipe.broker.retry import RetryPolicy, get_retry_count
from jobpipe.config import Settings, get_settings
from jobpipe.constants import MAIL_JOB_TYPES, SPAN_PROCESS_JOB, DeathReason
from jobpipe.errors import JobValidationError, error_type_of, is_permanent_error
from jobpipe.mail.handler import handle_mail_job
from jobpipe.mail.service import MailService
from jobpipe.notifications.handler import NotificationHandler
from jobpipe.observability.logging import job_log_context
from jobpipe.observability.metrics import MetricsCollector, get_metrics
from jobpipe.observability.tracing import job_span
from jobpipe.types.events import HandlerResult
from jobpipe.types.job import Job

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[HandlerResult | None]]


def _wire_field(content: Any, *path: str) -> Any:
    value = content
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


class JobConsumer:
    """
    Per-queue message handler.

    Args:
        queue_name: Queue this consumer is subscribed to.
        handler: Coroutine processing one validated job.
        policy: Retry and dead-letter policy for the queue.
        metrics: Metrics collector.
    """

    def __init__(
        self,
        queue_name: str,
        handler: JobHandler,
        policy: RetryPolicy,
        metrics: MetricsCollector | None = None,
    ):
        self.queue_name = queue_name
        self._handler = handler
        self._policy = policy
        self._metrics = metrics or get_metrics()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def __call__(
        self,
        content: Any,
        message: AbstractIncomingMessage,
        channel: AbstractChannel,
    ) -> None:
        retry_count = get_retry_count(message)
        with job_log_context(
            queue=self.queue_name,
            job_id=_wire_field(content, "jobId"),
            job_type=_wire_field(content, "type"),
            request_id=_wire_field(content, "meta", "requestId"),
            retry_count=retry_count,
        ):
            await self.process_message(content, message, channel, retry_count)

    async def process_message(
        self,
        content: Any,
        message: AbstractIncomingMessage,
        channel: AbstractChannel,
        retry_count: int,
    ) -> None:
        """Validate, run the handler and settle the delivery."""
        try:
            job = Job.from_wire(content)
        except (JobValidationError, ValidationError) as e:
            logger.error("Invalid job, rejecting without retry", extra={"error": str(e)})
            self._metrics.record_message_outcome(self.queue_name, "dead_letter")
            await self._policy.dead_letter(channel, message, e, DeathReason.INVALID_MESSAGE)
            return

        job_type = job.type.value
        start_time = time.monotonic()
        try:
            with job_span(
                SPAN_PROCESS_JOB,
                job_id=job.job_id,
                job_type=job_type,
                queue=self.queue_name,
                retry_count=retry_count,
            ):
                result = await self._handler(job)
        except Exception as e:
            self._metrics.observe_handler(self.queue_name, job_type, time.monotonic() - start_time)
            await self._handle_failure(channel, message, e, retry_count)
            return

        duration = time.monotonic() - start_time
        self._metrics.observe_handler(self.queue_name, job_type, duration)

        await message.ack()

        if result is not None and not result.success:
            # Nothing will change on retry, e.g. the post was deleted
            logger.warning("Job finished with soft failure", extra={"error": result.error})
            self._metrics.record_message_outcome(self.queue_name, "soft_failure")
            return

        logger.info(
            "Job processed",
            extra={
                "duration": f"{duration:.3f}s",
                "skipped": bool(result and result.skipped),
            },
        )
        self._metrics.record_message_outcome(self.queue_name, "ack")

    async def _handle_failure(
        self,
        channel: AbstractChannel,
        message: AbstractIncomingMessage,
        error: Exception,
        retry_count: int,
    ) -> None:
        error_type = error_type_of(error)

        if self._policy.should_retry(message, error):
            logger.warning(
                "Job failed, scheduling retry",
                extra={
                    "error": str(error),
                    "error_type": error_type,
                    "next_retry_count": retry_count + 1,
                    "max_retries": self._policy.max_retries,
                    "backoff_hint_seconds": self._policy.retry_delay(retry_count),
                },
            )
            self._metrics.record_retry(self.queue_name, error_type)
            self._metrics.record_message_outcome(self.queue_name, "retry")
            await self._policy.republish(
                channel,
                message,
                self.queue_name,
                self._policy.next_headers(message),
            )
            return

        if is_permanent_error(error):
            reason = DeathReason.PERMANENT_ERROR
            logger.error(
                "Job failed permanently, not retrying",
                extra={"error": str(error), "error_type": error_type},
            )
        else:
            reason = DeathReason.MAX_RETRIES_EXCEEDED
            logger.error(
                "Job exceeded max retries",
                extra={
                    "error": str(error),
                    "error_type": error_type,
                    "max_retries": self._policy.max_retries,
                },
            )

        self._metrics.record_message_outcome(self.queue_name, "dead_letter")
        await self._policy.dead_letter(channel, message, error, reason)


def create_mail_consumer(
    mail_service: MailService,
    settings: Settings | None = None,
    metrics: MetricsCollector | None = None,
) -> JobConsumer:
    """Consumer for the mail queue, dead-lettering to ``MAIL_DLQ_NAME``."""
    settings = settings or get_settings()
    policy = RetryPolicy(
        settings.mail_queue_name,
        max_retries=settings.mail_max_retries,
        retry_delay=settings.mail_retry_delay,
        dead_letter_queue=settings.mail_dlq_name,
        metrics=metrics,
    )

    async def handle(job: Job) -> HandlerResult:
        if job.type not in MAIL_JOB_TYPES:
            raise JobValidationError(f"Unknown email job type: {job.type}")
        return await handle_mail_job(job, mail_service)

    return JobConsumer(settings.mail_queue_name, handle, policy, metrics=metrics)


def create_notification_consumer(
    notification_handler: NotificationHandler,
    settings: Settings | None = None,
    metrics: MetricsCollector | None = None,
) -> JobConsumer:
    """Consumer for the notification queue."""
    settings = settings or get_settings()
    policy = RetryPolicy(
        settings.notification_queue_name,
        max_retries=settings.notification_max_retries,
        retry_delay=settings.notification_retry_delay,
        dead_letter_queue=settings.notification_dlq_name,
        metrics=metrics,
    )
    return JobConsumer(
        settings.notification_queue_name,
        notification_handler.handle,
        policy,
        metrics=metrics,
    )
