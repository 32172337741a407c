"""
Health endpoint response type definitions.
"""

from datetime import datetime

from pydantic import BaseModel

from jobpipe.constants import ConnectionState


class BrokerHealth(BaseModel):
    """Point-in-time view of the broker connection manager."""

    connected: bool
    has_consumer_channel: bool
    reconnect_attempts: int
    is_connecting: bool
    state: ConnectionState


class HealthResponse(BaseModel):
    """Response body for the health endpoint."""

    status: str
    version: str
    broker: BrokerHealth
    database: str
    redis: str
    consumers: list[str]
    timestamp: datetime
