"""
Type definitions for the job pipeline.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobpipe.types.api import BrokerHealth, HealthResponse
from jobpipe.types.events import HandlerResult, NotificationData, NotificationEvent
from jobpipe.types.job import Job, JobMeta, assert_job, create_job, validate_job

__all__ = [
    # API types
    "BrokerHealth",
    "HealthResponse",
    # Job types
    "Job",
    "JobMeta",
    "create_job",
    "validate_job",
    "assert_job",
    # Event types
    "HandlerResult",
    "NotificationData",
    "NotificationEvent",
]
