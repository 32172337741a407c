"""
Mail pipeline: templates, transport and job handler.
"""

from jobpipe.mail.handler import handle_mail_job
from jobpipe.mail.service import (
    MailMessage,
    MailResult,
    MailService,
    classify_exception,
    classify_response,
    validate_message,
)
from jobpipe.mail.templates import RenderedEmail, render

__all__ = [
    "handle_mail_job",
    "MailMessage",
    "MailResult",
    "MailService",
    "classify_exception",
    "classify_response",
    "validate_message",
    "RenderedEmail",
    "render",
]
