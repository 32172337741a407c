"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobType(StrEnum):
    """
    Canonical list of job types.

    Shared by the producer and every consumer; a type missing here is
    rejected on both sides of the queue.
    """

    # Email jobs
    SEND_OTP = "SEND_OTP"
    SEND_OTP_SIGNUP = "SEND_OTP_SIGNUP"
    SEND_FORGOT_PASSWORD = "SEND_FORGOT_PASSWORD"
    SEND_KYC_APPROVED = "SEND_KYC_APPROVED"
    CAMPAIGN_APPROVED = "CAMPAIGN_APPROVED"
    CAMPAIGN_REJECTED = "CAMPAIGN_REJECTED"
    CAMPAIGN_REMOVED = "CAMPAIGN_REMOVED"
    DONATION_THANK_YOU = "DONATION_THANK_YOU"
    ESCROW_THRESHOLD_EMAIL = "ESCROW_THRESHOLD_EMAIL"

    # Notification jobs
    POST_LIKED = "POST_LIKED"
    COMMENT_ADDED = "COMMENT_ADDED"
    USER_FOLLOWED = "USER_FOLLOWED"
    POST_REMOVED = "POST_REMOVED"
    USER_WARNED = "USER_WARNED"
    EVENT_UPDATE_CREATED = "EVENT_UPDATE_CREATED"
    EVENT_REMOVED = "EVENT_REMOVED"
    EVENT_STARTED = "EVENT_STARTED"
    CAMPAIGN_CREATED = "CAMPAIGN_CREATED"
    ESCROW_THRESHOLD_REACHED = "ESCROW_THRESHOLD_REACHED"
    ESCROW_APPROVED_BY_ADMIN = "ESCROW_APPROVED_BY_ADMIN"


class JobSource(StrEnum):
    """Where a job was produced."""

    API = "api"
    SYSTEM = "system"
    ADMIN = "admin"


class ErrorType(StrEnum):
    """Failure classification carried on raised errors."""

    VALIDATION = "VALIDATION"
    PERMANENT = "PERMANENT"
    TEMPORARY = "TEMPORARY"
    RATE_LIMIT = "RATE_LIMIT"
    DEPENDENCY_MISSING = "DEPENDENCY_MISSING"


class ConnectionState(StrEnum):
    """
    Broker connection lifecycle states.

    State transitions:
    - DISCONNECTED -> CONNECTING (connect called or reconnect timer fired)
    - CONNECTING -> CONNECTED (connection opened)
    - CONNECTING -> DISCONNECTED (attempt failed, reconnect scheduled)
    - CONNECTED -> DISCONNECTED (connection closed by broker or network)
    - any -> SHUTTING_DOWN (disconnect called, absorbing)
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SHUTTING_DOWN = "shutting_down"


class NotificationKind(StrEnum):
    """Notification record types stored for end users."""

    FOLLOW = "follow"
    LIKE = "like"
    COMMENT = "comment"
    MENTION = "mention"
    DONATION = "donation"
    CAMPAIGN_UPDATE = "campaign_update"
    CAMPAIGN_APPROVED = "campaign_approved"
    CAMPAIGN_REJECTED = "campaign_rejected"
    EVENT_INVITE = "event_invite"
    EVENT_UPDATE = "event_update"
    EVENT_STARTED = "event_started"
    EVENT_REMINDER = "event_reminder"
    EVENT_RSVP_CHANGE = "event_rsvp_change"
    POST_REMOVED = "post_removed"
    CAMPAIGN_REMOVED = "campaign_removed"
    EVENT_REMOVED = "event_removed"
    USER_WARNED = "user_warned"
    USER_BANNED = "user_banned"
    ADMIN_REPORTED = "admin_reported"
    SYSTEM = "system"
    WITHDRAWAL_RELEASED = "withdrawal_released"
    REFUND_PROCESSED = "refund_processed"
    ESCROW_THRESHOLD_REACHED = "escrow_threshold_reached"
    ESCROW_APPROVED = "escrow_approved"


MAIL_JOB_TYPES: frozenset[JobType] = frozenset(
    {
        JobType.SEND_OTP,
        JobType.SEND_OTP_SIGNUP,
        JobType.SEND_FORGOT_PASSWORD,
        JobType.SEND_KYC_APPROVED,
        JobType.CAMPAIGN_APPROVED,
        JobType.CAMPAIGN_REJECTED,
        JobType.CAMPAIGN_REMOVED,
        JobType.DONATION_THANK_YOU,
        JobType.ESCROW_THRESHOLD_EMAIL,
    }
)

NOTIFICATION_JOB_TYPES: frozenset[JobType] = frozenset(set(JobType) - MAIL_JOB_TYPES)

# RSVP statuses that count as attending an event
ATTENDING_RSVP_STATUSES = ("going", "interested")

# Transport headers
RETRY_COUNT_HEADER = "x-retry-count"
DEATH_REASON_HEADER = "x-death-reason"
ORIGINAL_QUEUE_HEADER = "x-original-queue"
ERROR_HEADER = "x-error"
ERROR_TYPE_HEADER = "x-error-type"

# Hard ceiling for errors escaping a handler into the consume loop.
# Kept below the per-pipeline retry limits enforced by the handlers.
MAX_CONSUME_ERROR_RETRIES = 5

# Fraction of the backoff delay added as random jitter
RECONNECT_JITTER_RATIO = 0.3

# Error messages are truncated before they go into headers and logs
MAX_ERROR_MESSAGE_LENGTH = 500

JSON_CONTENT_TYPE = "application/json"

# Metrics names
METRIC_JOBS_ENQUEUED = "jobpipe_jobs_enqueued_total"
METRIC_MESSAGES_CONSUMED = "jobpipe_messages_consumed_total"
METRIC_MESSAGES_RETRIED = "jobpipe_messages_retried_total"
METRIC_MESSAGES_DEAD_LETTERED = "jobpipe_messages_dead_lettered_total"
METRIC_HANDLER_DURATION = "jobpipe_handler_duration_seconds"
METRIC_MAIL_SENT = "jobpipe_mail_sent_total"
METRIC_NOTIFICATIONS_CREATED = "jobpipe_notifications_created_total"
METRIC_BROKER_RECONNECTS = "jobpipe_broker_reconnect_attempts_total"
METRIC_BROKER_CONNECTED = "jobpipe_broker_connected"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_PROCESS_JOB = "process_job"
SPAN_SEND_MAIL = "send_mail"
SPAN_CREATE_NOTIFICATION = "create_notification"


class DeathReason(StrEnum):
    """Why a message left its queue without succeeding."""

    INVALID_MESSAGE = "invalid_message"
    PERMANENT_ERROR = "permanent_error"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
