"""
RabbitMQ transport: connection management, producer, consume loop and retry policy.
"""

from jobpipe.broker.connection import ConnectionManager, calculate_backoff_delay
from jobpipe.broker.consumer import Consumer
from jobpipe.broker.producer import Producer, resolve_queue
from jobpipe.broker.retry import RetryPolicy, get_retry_count, next_headers

__all__ = [
    "ConnectionManager",
    "calculate_backoff_delay",
    "Consumer",
    "Producer",
    "resolve_queue",
    "RetryPolicy",
    "get_retry_count",
    "next_headers",
]
