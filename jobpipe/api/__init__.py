"""
API module.
Contains the health FastAPI application served by the worker.
"""

from jobpipe.api.main import HealthServer, create_app

__all__ = ["create_app", "HealthServer"]
