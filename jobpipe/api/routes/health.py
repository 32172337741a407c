"""
Health check routes served by the worker process.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response, status

from jobpipe import __version__
from jobpipe.broker.connection import ConnectionManager
from jobpipe.broker.consumer import Consumer
from jobpipe.db.connection import ping_db
from jobpipe.observability.metrics import get_metrics
from jobpipe.realtime import RealtimePublisher
from jobpipe.types.api import HealthResponse

router = APIRouter(tags=["Health"])


class HealthReporter:
    """
    Read-only view over the worker's collaborators.

    Args:
        manager: Broker connection manager.
        consumer: Consume loop, for the list of subscribed queues.
        publisher: Real-time publisher, if Redis is configured.
        db_check: Coroutine returning True when the database answers.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        consumer: Consumer | None = None,
        publisher: RealtimePublisher | None = None,
        db_check: Callable[[], Awaitable[bool]] = ping_db,
    ):
        self.manager = manager
        self.consumer = consumer
        self.publisher = publisher
        self._db_check = db_check

    async def check(self) -> HealthResponse:
        broker = self.manager.health()
        database = "healthy" if await self._db_check() else "unhealthy"

        if self.publisher is None or not self.publisher.is_configured:
            redis_status = "disabled"
        else:
            redis_status = "healthy" if await self.publisher.ping() else "unhealthy"

        if not (broker.connected and broker.has_consumer_channel):
            overall = "unhealthy"
        elif database != "healthy" or redis_status == "unhealthy":
            overall = "degraded"
        else:
            overall = "healthy"

        return HealthResponse(
            status=overall,
            version=__version__,
            broker=broker,
            database=database,
            redis=redis_status,
            consumers=self.consumer.queue_names if self.consumer else [],
            timestamp=datetime.now(timezone.utc),
        )

    def is_ready(self) -> bool:
        broker = self.manager.health()
        return broker.connected and broker.has_consumer_channel


def get_reporter(request: Request) -> HealthReporter:
    return request.app.state.reporter


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Broker, database and Redis status of the worker.",
)
async def health_check(reporter: HealthReporter = Depends(get_reporter)) -> HealthResponse:
    """
    Perform a health check.

    ``unhealthy`` means no broker connection or consumer channel;
    ``degraded`` means jobs flow but the database or Redis is failing.
    """
    return await reporter.check()


@router.get(
    "/ready",
    summary="Readiness check",
    description="Ready once the broker connection and consumer channel are open.",
)
async def readiness_check(
    response: Response,
    reporter: HealthReporter = Depends(get_reporter),
) -> dict:
    ready = reporter.is_ready()
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"ready": ready}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the process is alive.",
)
async def liveness_check() -> dict:
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
