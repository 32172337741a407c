"""
Producer API used by request-handling code to enqueue jobs.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from aio_pika import DeliveryMode, Message

from jobpipe.broker.connection import ConnectionManager
from jobpipe.config import Settings, get_settings
from jobpipe.constants import (
    JSON_CONTENT_TYPE,
    MAIL_JOB_TYPES,
    RETRY_COUNT_HEADER,
    SPAN_ENQUEUE_JOB,
    JobType,
)
from jobpipe.errors import JobValidationError
from jobpipe.observability.metrics import MetricsCollector, get_metrics
from jobpipe.observability.tracing import job_span
from jobpipe.types.job import Job, validate_job

logger = logging.getLogger(__name__)


def resolve_queue(job_type: JobType | str, settings: Settings | None = None) -> str:
    """Mail job types go to the mail queue, everything else to notifications."""
    settings = settings or get_settings()
    if job_type in MAIL_JOB_TYPES:
        return settings.mail_queue_name
    return settings.notification_queue_name


class Producer:
    """Publishes validated jobs to their durable queues."""

    def __init__(
        self,
        manager: ConnectionManager,
        metrics: MetricsCollector | None = None,
        settings: Settings | None = None,
    ):
        self._manager = manager
        self._metrics = metrics or get_metrics()
        self._settings = settings or get_settings()
        self._declared: set[str] = set()

    async def enqueue(self, job: Job | dict[str, Any], queue_name: str | None = None) -> str:
        """
        Validate and publish a job.

        Args:
            job: A :class:`Job` or wire-format dict.
            queue_name: Target queue. Resolved from the job type when omitted.

        Returns:
            The queue the job was published to.

        Raises:
            JobValidationError: If the job is malformed.
            Exception: Broker failures propagate to the caller.
        """
        try:
            validate_job(job)
        except JobValidationError as e:
            raise JobValidationError(f"Invalid job: {e.message}", cause=e) from e

        wire = job.to_wire() if isinstance(job, Job) else dict(job)
        job_type = wire["type"]
        job_id = wire["jobId"]
        target = queue_name or resolve_queue(job_type, self._settings)

        # The caller's job is left untouched
        wire["meta"] = {
            **wire["meta"],
            "queuedAt": datetime.now(timezone.utc).isoformat(),
            "queue": target,
        }

        with job_span(SPAN_ENQUEUE_JOB, job_id=job_id, job_type=job_type, queue=target):
            channel = await self._manager.get_publisher_channel()
            if target not in self._declared:
                await channel.declare_queue(target, durable=True)
                self._declared.add(target)

            message = Message(
                body=json.dumps(wire).encode("utf-8"),
                headers={RETRY_COUNT_HEADER: 0},
                content_type=JSON_CONTENT_TYPE,
                message_id=job_id,
                delivery_mode=DeliveryMode.PERSISTENT,
                timestamp=datetime.now(timezone.utc),
            )
            await channel.default_exchange.publish(message, routing_key=target)

        self._metrics.record_job_enqueued(target, job_type)
        logger.info(
            "Job pushed to queue",
            extra={
                "job_id": job_id,
                "job_type": job_type,
                "queue": target,
                "request_id": wire["meta"].get("requestId"),
            },
        )
        return target

    async def enqueue_safely(
        self, job: Job | dict[str, Any], queue_name: str | None = None
    ) -> bool:
        """
        Best-effort enqueue for request handlers.

        The triggering request must not fail because a side effect could not
        be queued, so failures are logged and reported as False.
        """
        try:
            await self.enqueue(job, queue_name)
        except Exception as e:
            job_type = job.type if isinstance(job, Job) else (job or {}).get("type")
            logger.error(
                "Failed to enqueue job",
                extra={"job_type": str(job_type), "error": str(e)},
            )
            return False
        return True
