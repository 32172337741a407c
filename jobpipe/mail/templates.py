"""
Email templates, one set per mail job type.

Every mail job type has three Jinja2 templates: ``<name>/subject.txt``,
``<name>/body.html`` and ``<name>/body.txt``. Autoescaping is switched on by
extension, so only the HTML part is escaped.

Each entry declares the payload fields it needs; a job missing any of them
can never render, so it is rejected as a validation error.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from jobpipe.config import get_settings
from jobpipe.constants import MAIL_JOB_TYPES, JobType
from jobpipe.errors import JobValidationError

DEFAULT_REJECTION_REASON = "No specific reason was given"
DEFAULT_REMOVAL_DETAILS = (
    "Your campaign was reported by other users as violating the MACha community standards"
)

_SOURCES = {
    "layout.html": """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #222;">
<h2 style="color: #e6447a;">{% block title %}{% endblock %}</h2>
{% block content %}{% endblock %}
<p style="color: #888; font-size: 12px;">
MACha - this is an automated message, please do not reply.
</p>
</body>
</html>
""",
    "otp/subject.txt": "{{ subject }}",
    "otp/body.html": """\
{% extends "layout.html" %}
{% block title %}{{ subject }}{% endblock %}
{% block content %}
<p>Hi {{ username }},</p>
<p>Your verification code to {{ purpose }} is:</p>
<p style="font-size: 28px; letter-spacing: 6px;"><b>{{ otp }}</b></p>
<p>The code expires in {{ expires_in }} minutes.</p>
{% endblock %}
""",
    "otp/body.txt": """\
Hi {{ username }},

Your verification code to {{ purpose }} is: {{ otp }}
The code expires in {{ expires_in }} minutes.
""",
    "forgot_password/subject.txt": "Your MACha password was reset",
    "forgot_password/body.html": """\
{% extends "layout.html" %}
{% block title %}Your MACha password was reset{% endblock %}
{% block content %}
<p>Hi {{ username }},</p>
<p>Your new temporary password is <b>{{ new_password }}</b>.</p>
<p>Please sign in and change it right away.</p>
{% endblock %}
""",
    "forgot_password/body.txt": """\
Hi {{ username }},

Your new temporary password is: {{ new_password }}
Please sign in and change it right away.
""",
    "kyc_approved/subject.txt": "Your identity verification was approved",
    "kyc_approved/body.html": """\
{% extends "layout.html" %}
{% block title %}Your identity verification was approved{% endblock %}
{% block content %}
<p>Hi {{ username }},</p>
<p>Your KYC verification was approved. You can now create campaigns and request withdrawals.</p>
{% endblock %}
""",
    "kyc_approved/body.txt": """\
Hi {{ username }},

Your KYC verification was approved. You can now create campaigns and request withdrawals.
""",
    "campaign_approved/subject.txt": "Campaign approved: {{ title }}",
    "campaign_approved/body.html": """\
{% extends "layout.html" %}
{% block title %}Your campaign is live{% endblock %}
{% block content %}
<p>Hi {{ username }},</p>
<p>Your campaign <b>{{ title }}</b> was approved and is now visible to donors.</p>
<p><a href="{{ campaign_url }}">View your campaign</a></p>
{% endblock %}
""",
    "campaign_approved/body.txt": """\
Hi {{ username }},

Your campaign "{{ title }}" was approved and is now visible to donors.
{{ campaign_url }}
""",
    "campaign_rejected/subject.txt": "Campaign not approved: {{ title }}",
    "campaign_rejected/body.html": """\
{% extends "layout.html" %}
{% block title %}Your campaign was not approved{% endblock %}
{% block content %}
<p>Hi {{ username }},</p>
<p>Your campaign <b>{{ title }}</b> was not approved.</p>
<p>Reason: {{ reason }}</p>
<p>You can update the campaign and submit it again.</p>
{% endblock %}
""",
    "campaign_rejected/body.txt": """\
Hi {{ username }},

Your campaign "{{ title }}" was not approved.
Reason: {{ reason }}
You can update the campaign and submit it again.
""",
    "campaign_removed/subject.txt": "Campaign removed: {{ title }}",
    "campaign_removed/body.html": """\
{% extends "layout.html" %}
{% block title %}Your campaign was removed{% endblock %}
{% block content %}
<p>Hi {{ username }},</p>
<p>Your campaign <b>{{ title }}</b> was removed.</p>
<p>{{ details }}</p>
{% endblock %}
""",
    "campaign_removed/body.txt": """\
Hi {{ username }},

Your campaign "{{ title }}" was removed.
{{ details }}
""",
    "donation_thank_you/subject.txt": "Thank you for your donation",
    "donation_thank_you/body.html": """\
{% extends "layout.html" %}
{% block title %}Thank you for your donation{% endblock %}
{% block content %}
<p>Dear {{ donor }},</p>
<p>Thank you for supporting a campaign on MACha.</p>
<ul>
<li>Amount: {{ amount }}</li>
<li>Time: {{ when }}</li>
{% if transaction_id %}
<li>Transaction: {{ transaction_id }}</li>
{% endif %}
</ul>
{% endblock %}
""",
    "donation_thank_you/body.txt": """\
Dear {{ donor }},

Thank you for supporting a campaign on MACha.
Amount: {{ amount }}
Time: {{ when }}
{% if transaction_id %}
Transaction: {{ transaction_id }}
{% endif %}
""",
    "escrow_threshold/subject.txt": "Vote on a withdrawal for {{ title }}",
    "escrow_threshold/body.html": """\
{% extends "layout.html" %}
{% block title %}A campaign you supported requested a withdrawal{% endblock %}
{% block content %}
<p>Dear {{ donor }},</p>
<p>The campaign <b>{{ title }}</b> requested a withdrawal
{%- if milestone %} after reaching {{ milestone }}% of its goal{% endif %}.
As a donor you can vote on the request.</p>
<p><a href="{{ campaign_url }}">Review and vote</a></p>
{% endblock %}
""",
    "escrow_threshold/body.txt": """\
Dear {{ donor }},

The campaign "{{ title }}" requested a withdrawal
{%- if milestone %} after reaching {{ milestone }}% of its goal{% endif %}.
As a donor you can vote on the request.
{{ campaign_url }}
""",
}

environment = Environment(
    loader=DictLoader(_SOURCES),
    autoescape=select_autoescape(
        enabled_extensions=("html",), default_for_string=False, default=False
    ),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


_campaign_link = environment.from_string("{{ base }}/campaigns/{{ campaign_id|urlencode }}")


def _campaign_url(campaign_id: Any) -> str:
    base = get_settings().frontend_url.rstrip("/")
    return _campaign_link.render(base=base, campaign_id=str(campaign_id))


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def _otp_context(purpose: str, subject: str) -> Callable[[Mapping[str, Any]], dict[str, Any]]:
    def build(p: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "subject": subject,
            "purpose": purpose,
            "username": p["username"],
            "otp": p["otp"],
            "expires_in": p["expiresIn"],
        }

    return build


def _campaign_context(p: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "username": p["username"],
        "title": p["campaignTitle"],
        "campaign_url": _campaign_url(p["campaignId"]),
        "reason": p.get("reason") or DEFAULT_REJECTION_REASON,
        "details": p.get("resolutionDetails") or DEFAULT_REMOVAL_DETAILS,
    }


def _format_amount(amount: Any, currency: Any) -> str:
    try:
        return f"{float(amount):,.0f} {currency}"
    except (TypeError, ValueError):
        return f"{amount} {currency}"


def _donation_context(p: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "donor": p.get("donorName") or "friend",
        "amount": _format_amount(p["amount"], p["currency"]),
        "when": (
            p.get("transactionTime")
            or p.get("createdAt")
            or datetime.now(timezone.utc).isoformat()
        ),
        "transaction_id": p.get("transactionId"),
    }


def _escrow_context(p: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "donor": p.get("donorName") or "friend",
        "title": p["campaignTitle"],
        "campaign_url": _campaign_url(p["campaignId"]),
        "milestone": p.get("milestonePercentage"),
    }


ContextBuilder = Callable[[Mapping[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class MailTemplate:
    """Required payload fields, the template directory and its context builder."""

    required: tuple[str, ...]
    name: str
    context: ContextBuilder

    def render(self, payload: Mapping[str, Any]) -> RenderedEmail:
        context = self.context(payload)
        subject = environment.get_template(f"{self.name}/subject.txt").render(context)
        return RenderedEmail(
            subject=subject.strip(),
            html=environment.get_template(f"{self.name}/body.html").render(context),
            text=environment.get_template(f"{self.name}/body.txt").render(context),
        )


_CAMPAIGN_FIELDS = ("username", "campaignTitle", "campaignId")

TEMPLATES: dict[JobType, MailTemplate] = {
    JobType.SEND_OTP: MailTemplate(
        ("username", "otp", "expiresIn"),
        "otp",
        _otp_context("sign in", "Your MACha verification code"),
    ),
    JobType.SEND_OTP_SIGNUP: MailTemplate(
        ("username", "otp", "expiresIn"),
        "otp",
        _otp_context("finish creating your account", "Confirm your MACha account"),
    ),
    JobType.SEND_FORGOT_PASSWORD: MailTemplate(
        ("username", "newPassword"),
        "forgot_password",
        lambda p: {"username": p["username"], "new_password": p["newPassword"]},
    ),
    JobType.SEND_KYC_APPROVED: MailTemplate(
        ("username",), "kyc_approved", lambda p: {"username": p["username"]}
    ),
    JobType.CAMPAIGN_APPROVED: MailTemplate(
        _CAMPAIGN_FIELDS, "campaign_approved", _campaign_context
    ),
    JobType.CAMPAIGN_REJECTED: MailTemplate(
        _CAMPAIGN_FIELDS, "campaign_rejected", _campaign_context
    ),
    JobType.CAMPAIGN_REMOVED: MailTemplate(
        _CAMPAIGN_FIELDS, "campaign_removed", _campaign_context
    ),
    JobType.DONATION_THANK_YOU: MailTemplate(
        ("email", "amount", "currency"), "donation_thank_you", _donation_context
    ),
    JobType.ESCROW_THRESHOLD_EMAIL: MailTemplate(
        ("email", "campaignTitle", "campaignId"), "escrow_threshold", _escrow_context
    ),
}

if set(TEMPLATES) != MAIL_JOB_TYPES:
    raise RuntimeError(
        f"Mail templates out of sync with job types: {sorted(MAIL_JOB_TYPES ^ set(TEMPLATES))}"
    )


def render(job_type: JobType | str, payload: Mapping[str, Any]) -> RenderedEmail:
    """
    Render the email for a mail job.

    Raises:
        JobValidationError: Unknown mail type or missing required fields.
    """
    template = TEMPLATES.get(job_type)
    if template is None:
        raise JobValidationError(f"Unknown email job type: {job_type}")

    missing = [field for field in template.required if not payload.get(field)]
    if missing:
        raise JobValidationError(
            f"Missing required fields for {job_type}: {', '.join(template.required)}"
        )
    return template.render(payload)
