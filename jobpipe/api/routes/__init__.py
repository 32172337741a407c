"""
API routes module.
"""

from jobpipe.api.routes.health import HealthReporter
from jobpipe.api.routes.health import router as health_router

__all__ = ["health_router", "HealthReporter"]
