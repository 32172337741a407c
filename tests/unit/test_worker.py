"""
Unit tests for the worker process lifecycle.
"""

import asyncio
import os
import signal
from unittest.mock import AsyncMock

import pytest
import structlog

from jobpipe.constants import ConnectionState
from jobpipe.worker import main
from jobpipe.worker.main import Worker, run_async


@pytest.fixture
def worker_settings(settings):
    return settings.model_copy(update={"health_enabled": False, "rabbitmq_max_retries": 1})


@pytest.fixture
def database(monkeypatch):
    """Replace the database lifecycle with mocks."""
    init_db = AsyncMock()
    close_db = AsyncMock()
    monkeypatch.setattr(main, "init_db", init_db)
    monkeypatch.setattr(main, "close_db", close_db)
    return init_db, close_db


@pytest.fixture
def no_global_setup(monkeypatch):
    """Keep run_async from touching global logging, metrics and tracing."""
    for name in ("setup_logging", "setup_metrics", "setup_tracing"):
        monkeypatch.setattr(main, name, lambda: None)


@pytest.fixture
def worker(worker_settings, broker, publisher, metrics, database) -> Worker:
    return Worker(
        worker_settings,
        connect_factory=broker.connect,
        publisher=publisher,
        metrics=metrics,
    )


async def wait_until_consuming(worker: Worker) -> None:
    for _ in range(100):
        if len(worker.consumer.queue_names) == 2:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("worker never subscribed")


class TestWorker:
    """Tests for Worker start and stop."""

    @pytest.mark.asyncio
    async def test_start_subscribes_both_queues(self, worker, database):
        """Start opens the database and subscribes the mail and notification queues."""
        init_db, _ = database

        await worker.start()

        init_db.assert_awaited_once()
        assert structlog.contextvars.get_contextvars()["worker_pid"] == os.getpid()
        assert worker.consumer.queue_names == ["mail.send", "notification.create"]
        consumer_channel = await worker.manager.get_consumer_channel()
        assert consumer_channel.declared == ["mail.send", "notification.create"]

        await worker.stop()

    @pytest.mark.asyncio
    async def test_dead_letter_queue_declared_on_publisher_channel(self, worker, broker):
        """The mail DLQ is declared once, away from the consumer channel."""
        await worker.start()

        publisher_channel = await worker.manager.get_publisher_channel()
        assert publisher_channel.declared == ["mail.send.dlq"]
        assert broker.queues["mail.send.dlq"].durable is True

        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_everything_once(self, worker, database):
        """Stop shuts the broker and the database down and is idempotent."""
        _, close_db = database
        await worker.start()

        await worker.stop()
        await worker.stop()

        assert worker.manager.state is ConnectionState.SHUTTING_DOWN
        assert worker.consumer.queue_names == []
        close_db.assert_awaited_once()

    def test_shutdown_keeps_highest_exit_code(self, worker):
        """A later clean request never lowers an error exit code."""
        worker.request_shutdown("broker_unreachable", exit_code=1)
        worker.request_shutdown("SIGTERM")

        assert worker.exit_code == 1


class TestRunAsync:
    """Tests for the process exit codes."""

    @pytest.mark.asyncio
    async def test_sigterm_exits_zero(self, worker, no_global_setup, database):
        """SIGTERM stops the worker gracefully with exit code 0."""
        _, close_db = database
        task = asyncio.create_task(run_async(worker))
        await wait_until_consuming(worker)

        signal.raise_signal(signal.SIGTERM)
        exit_code = await asyncio.wait_for(task, timeout=2.0)

        assert exit_code == 0
        assert worker.manager.state is ConnectionState.SHUTTING_DOWN
        close_db.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_broker_fatal_exits_one(self, worker, broker, no_global_setup):
        """Running out of reconnect attempts shuts down with exit code 1."""
        task = asyncio.create_task(run_async(worker))
        await wait_until_consuming(worker)

        broker.fail_connects = 10
        broker.connections[0].drop()
        exit_code = await asyncio.wait_for(task, timeout=2.0)

        assert exit_code == 1
        assert broker.connect_calls == 2

    @pytest.mark.asyncio
    async def test_failed_start_stops_and_exits_one(
        self, worker, broker, no_global_setup, database
    ):
        """A startup failure still runs the shutdown sequence."""
        _, close_db = database
        broker.fail_connects = 10

        exit_code = await asyncio.wait_for(run_async(worker), timeout=2.0)

        assert exit_code == 1
        assert worker.consumer.queue_names == []
        assert worker.manager.state is ConnectionState.SHUTTING_DOWN
        close_db.assert_awaited_once()
