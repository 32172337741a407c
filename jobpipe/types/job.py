"""
Job contract shared by the producer and every consumer.

Wire format (JSON, camelCase)::

    {
        "jobId": "uuid",
        "type": "POST_LIKED",
        "payload": {...},
        "meta": {
            "requestId": "uuid",
            "userId": "u1" | null,
            "retryCount": 0,
            "createdAt": "2024-01-01T00:00:00.000Z",
            "source": "api" | "system" | "admin"
        }
    }
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from jobpipe.constants import JobSource, JobType
from jobpipe.errors import JobValidationError

_VALID_TYPES = frozenset(t.value for t in JobType)
_VALID_SOURCES = frozenset(s.value for s in JobSource)

# Python callers may pass snake_case meta keys
_META_ALIASES = {
    "request_id": "requestId",
    "user_id": "userId",
    "retry_count": "retryCount",
    "created_at": "createdAt",
}


def _now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _new_id() -> str:
    return str(uuid4())


class JobMeta(BaseModel):
    """Job metadata. Unknown fields are allowed and preserved."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    request_id: str = Field(default_factory=_new_id, alias="requestId")
    user_id: str | None = Field(default=None, alias="userId")
    retry_count: int | float = Field(default=0, ge=0, alias="retryCount")
    created_at: str = Field(default_factory=_now_iso, alias="createdAt")
    source: JobSource = JobSource.API


class Job(BaseModel):
    """A typed unit of asynchronous work."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(default_factory=_new_id, alias="jobId")
    type: JobType
    payload: dict[str, Any]
    meta: JobMeta

    @classmethod
    def from_wire(cls, data: Any) -> "Job":
        """Validate untyped wire data and build a Job from it."""
        validate_job(data)
        return cls.model_validate(data)

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict using the camelCase wire keys."""
        return self.model_dump(mode="json", by_alias=True)

    def to_bytes(self) -> bytes:
        """Serialized message body."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @property
    def request_id(self) -> str:
        return self.meta.request_id

    @property
    def user_id(self) -> str | None:
        return self.meta.user_id


def _is_object(value: Any) -> bool:
    return isinstance(value, Mapping)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_iso_datetime(value: str) -> bool:
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def validate_job(job: Any) -> bool:
    """
    Validate a job against the contract (fail fast).

    Accepts a :class:`Job` or untyped wire data. Never mutates its input.

    Args:
        job: The job to validate.

    Returns:
        True if the job is valid.

    Raises:
        JobValidationError: On the first violated rule.
    """
    data = job.to_wire() if isinstance(job, Job) else job

    if not _is_object(data):
        raise JobValidationError("Job must be a non-null object")

    job_id = data.get("jobId")
    if not job_id or not isinstance(job_id, str):
        raise JobValidationError("Job must have a valid jobId (UUID string)")

    job_type = data.get("type")
    if not isinstance(job_type, str) or job_type not in _VALID_TYPES:
        raise JobValidationError(f"Job must have a valid type. Got: {job_type}")

    if not _is_object(data.get("payload")):
        raise JobValidationError("Job must have a valid payload object")

    meta = data.get("meta")
    if not _is_object(meta):
        raise JobValidationError("Job must have a valid meta object")

    request_id = meta.get("requestId")
    if not request_id or not isinstance(request_id, str):
        raise JobValidationError("Job meta must have a valid requestId (string)")

    created_at = meta.get("createdAt")
    if not created_at or not isinstance(created_at, str) or not _is_iso_datetime(created_at):
        raise JobValidationError("Job meta must have a valid createdAt (ISO string)")

    source = meta.get("source")
    if not isinstance(source, str) or source not in _VALID_SOURCES:
        raise JobValidationError(f"Job meta must have a valid source. Got: {source}")

    user_id = meta.get("userId")
    if user_id is not None and not isinstance(user_id, str):
        raise JobValidationError("Job meta userId must be a string or null")

    if "retryCount" in meta:
        retry_count = meta["retryCount"]
        if not _is_number(retry_count) or retry_count < 0:
            raise JobValidationError("Job meta retryCount must be a non-negative number")

    return True


def assert_job(job: Any) -> None:
    """Assert a job is valid (fail fast)."""
    validate_job(job)


def create_job(
    job_type: JobType | str,
    payload: Mapping[str, Any],
    meta: Mapping[str, Any] | None = None,
) -> Job:
    """
    Create a standardized job.

    Args:
        job_type: Job type (member or value of :class:`JobType`).
        payload: Type-specific data owned by the producing call site.
        meta: Metadata (requestId, userId, source, ...). Missing fields
            get defaults; additional fields are preserved.

    Returns:
        The new Job.

    Raises:
        JobValidationError: If the type is unknown or payload/meta are not objects.
    """
    if not isinstance(job_type, str) or job_type not in _VALID_TYPES:
        raise JobValidationError(
            f"Invalid job type: {job_type}. Must be one of: {', '.join(sorted(_VALID_TYPES))}"
        )

    if not _is_object(payload):
        raise JobValidationError("Job payload must be a non-null object")

    if meta is None:
        meta = {}
    elif not _is_object(meta):
        raise JobValidationError("Job meta must be a non-null object")

    merged: dict[str, Any] = {
        "requestId": _new_id(),
        "userId": None,
        "retryCount": 0,
        "createdAt": _now_iso(),
        "source": JobSource.API.value,
    }
    for key, value in meta.items():
        if value is None:
            continue
        merged[_META_ALIASES.get(key, key)] = value

    data = {
        "jobId": _new_id(),
        "type": str(job_type),
        "payload": dict(payload),
        "meta": merged,
    }
    validate_job(data)
    return Job.model_validate(data)
