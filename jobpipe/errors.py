"""
Error taxonomy for job processing.

Handlers classify failures by raising one of these errors. The consume loop
and the retry policy only ever read ``is_permanent`` (and ``error_type`` for
logging); they never inspect error messages.
"""

from jobpipe.constants import ErrorType


class JobError(Exception):
    """Base class for classified job failures."""

    is_permanent: bool = False
    error_type: ErrorType = ErrorType.TEMPORARY

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class PermanentError(JobError):
    """The input itself was rejected; retrying cannot succeed."""

    is_permanent = True
    error_type = ErrorType.PERMANENT


class JobValidationError(PermanentError, ValueError):
    """A job or its payload does not match the contract."""

    error_type = ErrorType.VALIDATION


class DependencyMissingError(PermanentError):
    """A collaborator required by the handler is not available in this process."""

    error_type = ErrorType.DEPENDENCY_MISSING


class TemporaryError(JobError):
    """Transient infrastructure or provider failure."""

    is_permanent = False
    error_type = ErrorType.TEMPORARY


class RateLimitError(TemporaryError):
    """Provider asked us to slow down."""

    error_type = ErrorType.RATE_LIMIT


class BrokerError(Exception):
    """Broker connection or channel could not be obtained."""


class BrokerShuttingDownError(BrokerError):
    """Raised when a connection is requested after shutdown started."""


def is_permanent_error(error: BaseException | None) -> bool:
    """Check the permanence flag. Unclassified exceptions are not permanent."""
    return error is not None and getattr(error, "is_permanent", False) is True


def is_retryable_error(error: BaseException | None) -> bool:
    """Inverse of :func:`is_permanent_error` for a present error."""
    return error is not None and not is_permanent_error(error)


def error_type_of(error: BaseException | None) -> str:
    """Classification tag for logs and metrics."""
    if error is None:
        return "none"
    error_type = getattr(error, "error_type", None)
    if error_type is None:
        return ErrorType.TEMPORARY.value
    return str(error_type)
