"""
Mail job handler: turns a validated mail job into one provider call.
"""

import logging

from jobpipe.errors import JobValidationError, error_type_of
from jobpipe.mail import templates
from jobpipe.mail.service import MailService, is_valid_email, validate_message
from jobpipe.types.events import HandlerResult
from jobpipe.types.job import Job

logger = logging.getLogger(__name__)


async def handle_mail_job(job: Job, mail_service: MailService) -> HandlerResult:
    """
    Render and send the email for a mail job.

    Args:
        job: A validated mail job; ``payload.email`` is the recipient.
        mail_service: Transport used for the send.

    Returns:
        HandlerResult carrying the provider message id.

    Raises:
        JobValidationError: Bad recipient, unknown type or missing fields.
        JobError: Classified provider failure from the transport.
    """
    payload = job.payload
    email = payload.get("email")
    if not isinstance(email, str) or not email.strip():
        raise JobValidationError("Missing or invalid email address in payload")

    email = email.strip().lower()
    if not is_valid_email(email):
        raise JobValidationError("Invalid email address format")

    rendered = templates.render(job.type, payload)
    message = validate_message(email, rendered.subject, rendered.html, rendered.text)

    log_extra = {
        "request_id": job.request_id,
        "user_id": job.user_id,
        "job_type": job.type.value,
        "email": email,
    }
    logger.info("Processing email job", extra=log_extra)

    try:
        result = await mail_service.send(message)
    except Exception as e:
        level = logging.ERROR if getattr(e, "is_permanent", False) else logging.WARNING
        logger.log(
            level,
            "Email job failed",
            extra={**log_extra, "error": str(e), "error_type": error_type_of(e)},
        )
        raise

    logger.info("Email sent successfully", extra={**log_extra, "message_id": result.message_id})
    return HandlerResult.ok(message_id=result.message_id)
