"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobpipe.db.connection import (
    close_db,
    get_engine,
    get_session_context,
    get_session_factory,
    init_db,
    ping_db,
)
from jobpipe.db.models import REFERENCE_MODELS, Base, Notification
from jobpipe.db.repository import NotificationRepository, ReferenceRepository

__all__ = [
    "get_engine",
    "get_session_context",
    "get_session_factory",
    "init_db",
    "close_db",
    "ping_db",
    "Base",
    "Notification",
    "REFERENCE_MODELS",
    "NotificationRepository",
    "ReferenceRepository",
]
