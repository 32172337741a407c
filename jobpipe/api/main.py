"""
Health API application, served by uvicorn inside the worker process.
"""

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager

import uvicorn
from fastapi import FastAPI

from jobpipe import __version__
from jobpipe.api.routes import HealthReporter, health_router
from jobpipe.config import get_settings
from jobpipe.observability.tracing import instrument_fastapi

logger = logging.getLogger(__name__)


def create_app(reporter: HealthReporter, instrument: bool = True) -> FastAPI:
    """
    Create the health FastAPI application.

    Args:
        reporter: View over the worker's broker, database and Redis state.
        instrument: Attach OpenTelemetry instrumentation.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Pipeline Worker",
        description="Health and metrics for the mail and notification consumers",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.reporter = reporter
    app.include_router(health_router)

    if instrument:
        instrument_fastapi(app)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker."""

    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class HealthServer:
    """Runs the health app as a task on the worker's event loop."""

    def __init__(self, app: FastAPI, host: str | None = None, port: int | None = None):
        settings = get_settings()
        self.host = host or settings.health_host
        self.port = port or settings.health_port
        config = uvicorn.Config(
            app,
            host=self.host,
            port=self.port,
            log_level=settings.log_level.lower(),
            lifespan="off",
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Health server started", extra={"host": self.host, "port": self.port})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except Exception as e:
            logger.warning("Health server did not stop cleanly", extra={"error": str(e)})
        self._task = None
        logger.info("Health server stopped")
