"""
Mail transport: one HTTP call per email to a Resend-compatible provider.

Provider failures are classified here and raised as typed errors:

- connection errors, timeouts and DNS failures are temporary
- HTTP 429 or a rate-limit message is temporary with ``error_type=RATE_LIMIT``
- HTTP 5xx is temporary
- any other HTTP 4xx is permanent
- anything unrecognized is temporary
"""

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

import httpx

from jobpipe.config import Settings, get_settings
from jobpipe.constants import MAX_ERROR_MESSAGE_LENGTH, SPAN_SEND_MAIL
from jobpipe.errors import (
    DependencyMissingError,
    JobError,
    JobValidationError,
    PermanentError,
    RateLimitError,
    TemporaryError,
    error_type_of,
)
from jobpipe.observability.metrics import MetricsCollector, get_metrics
from jobpipe.observability.tracing import job_span

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class MailMessage:
    to: list[str]
    subject: str
    html: str | None = None
    text: str | None = None


@dataclass(frozen=True)
class MailResult:
    success: bool
    message_id: str | None = None


def is_valid_email(email: object) -> bool:
    return isinstance(email, str) and EMAIL_PATTERN.match(email) is not None


def normalize_recipients(to: str | Sequence[str]) -> list[str]:
    """Trim and lowercase one or many recipients."""
    recipients = [to] if isinstance(to, str) else list(to)
    return [r.strip().lower() for r in recipients if isinstance(r, str)]


def validate_message(
    to: str | Sequence[str],
    subject: str | None,
    html: str | None = None,
    text: str | None = None,
) -> MailMessage:
    """
    Build a :class:`MailMessage`, rejecting input no provider would accept.

    Raises:
        JobValidationError: Bad recipients, empty subject or no content.
    """
    if not to:
        raise JobValidationError("Missing required field: to")

    recipients = normalize_recipients(to)
    if not recipients or not all(is_valid_email(r) for r in recipients):
        raise JobValidationError("Invalid email address format")

    if not isinstance(subject, str) or not subject.strip():
        raise JobValidationError("Missing required field: subject")

    if not html and not text:
        raise JobValidationError("Either html or text content is required")

    return MailMessage(to=recipients, subject=subject, html=html or None, text=text or None)


def _response_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:MAX_ERROR_MESSAGE_LENGTH]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:MAX_ERROR_MESSAGE_LENGTH]
    return str(body)[:MAX_ERROR_MESSAGE_LENGTH]


def classify_response(response: httpx.Response) -> JobError:
    """Map a failed provider response to a typed error."""
    status = response.status_code
    detail = _response_detail(response)
    message = f"Mail provider returned {status}: {detail}"

    if status == 429 or "rate limit" in detail.lower():
        return RateLimitError(message)
    if 500 <= status < 600:
        return TemporaryError(message)
    if 400 <= status < 500:
        return PermanentError(message)
    return TemporaryError(message)


def classify_exception(error: Exception) -> JobError:
    """Map a transport exception to a typed error."""
    if isinstance(error, JobError):
        return error
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return TemporaryError(f"Email sending timeout: {error}", cause=error)
    if isinstance(error, httpx.TransportError):
        return TemporaryError(f"Mail provider unreachable: {error}", cause=error)
    if "rate limit" in str(error).lower():
        return RateLimitError(str(error), cause=error)
    return TemporaryError(f"Unexpected mail error: {error}", cause=error)


class MailService:
    """
    Sends email through the provider's HTTP API.

    The request races ``EMAIL_TIMEOUT``; a send that loses the race is
    cancelled and classified as temporary.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._timeout = self._settings.email_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    async def send(self, message: MailMessage) -> MailResult:
        """
        Send one email.

        Returns:
            MailResult with the provider's message id.

        Raises:
            JobError: Classified provider or transport failure.
            DependencyMissingError: No API key configured.
        """
        api_key = self._settings.resend_api_key
        if not api_key:
            raise DependencyMissingError("RESEND_API_KEY is not configured")

        body: dict[str, object] = {
            "from": self._settings.mail_from_field,
            "to": message.to,
            "subject": message.subject,
        }
        if message.html:
            body["html"] = message.html
        if message.text:
            body["text"] = message.text

        with job_span(SPAN_SEND_MAIL, recipients=len(message.to)):
            try:
                response = await asyncio.wait_for(
                    self._client.post(
                        self._settings.mail_api_url,
                        json=body,
                        headers={"Authorization": f"Bearer {api_key}"},
                    ),
                    timeout=self._timeout,
                )
            except Exception as e:
                error = classify_exception(e)
                self._record_failure(message, error)
                if error is e:
                    raise
                raise error from e

            if response.is_error:
                error = classify_response(response)
                self._record_failure(message, error)
                raise error

        try:
            message_id = response.json().get("id")
        except (ValueError, AttributeError):
            message_id = None

        self._metrics.record_mail("sent")
        return MailResult(success=True, message_id=message_id)

    def _record_failure(self, message: MailMessage, error: JobError) -> None:
        self._metrics.record_mail("failed", error_type_of(error))
        logger.error(
            "Failed to send email",
            extra={
                "to": message.to,
                "subject": message.subject,
                "error": str(error),
                "error_type": error_type_of(error),
                "retryable": not error.is_permanent,
            },
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
