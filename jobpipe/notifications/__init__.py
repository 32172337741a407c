"""
Notification pipeline: per-type handlers and the persist-then-publish service.
"""

from jobpipe.notifications.handler import (
    NotificationContext,
    NotificationHandler,
    get_handler,
    list_handlers,
    register_handler,
    unique_ids,
)
from jobpipe.notifications.service import NotificationService

__all__ = [
    "NotificationContext",
    "NotificationHandler",
    "NotificationService",
    "get_handler",
    "list_handlers",
    "register_handler",
    "unique_ids",
]
