"""
Notification job handlers registry and implementations.

Every notification job type has exactly one handler; the registry is checked
against the canonical job type list when this module is imported.

Handlers prefer ids the producer already put in the payload (``postOwnerId``,
``rsvpUserIds``, ``creatorId``, ``donorIds``) and only fall back to the
reference tables when they are missing. A deleted post or event is a soft
failure (acked, never retried). A reference model missing from this process
is a permanent error.

Handlers must tolerate running twice for the same job: delivery is
at-least-once and a duplicate notification is acceptable.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from jobpipe.constants import NOTIFICATION_JOB_TYPES, JobType, NotificationKind
from jobpipe.db.repository import ReferenceRepository
from jobpipe.errors import JobValidationError
from jobpipe.notifications.service import NotificationService
from jobpipe.types.events import HandlerResult, NotificationData
from jobpipe.types.job import Job

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TITLE = "untitled"
DEFAULT_CAMPAIGN_TITLE = "untitled"
STANDARDS_VIOLATION_POST = (
    "Your post was reported by other users as violating the MACha community standards"
)
STANDARDS_VIOLATION_EVENT = (
    "Your event was reported by other users as violating the MACha community standards"
)


@dataclass
class NotificationContext:
    """Everything a handler needs for one job."""

    job: Job
    service: NotificationService
    references: ReferenceRepository

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload


NotificationJobHandler = Callable[[NotificationContext], Awaitable[HandlerResult]]

_handlers: dict[JobType, NotificationJobHandler] = {}


def register_handler(
    job_type: JobType,
) -> Callable[[NotificationJobHandler], NotificationJobHandler]:
    """
    Decorator to register the handler for a notification job type.

    Example:
        @register_handler(JobType.POST_LIKED)
        async def handle_post_liked(ctx: NotificationContext) -> HandlerResult:
            ...
    """

    def decorator(handler: NotificationJobHandler) -> NotificationJobHandler:
        if job_type not in NOTIFICATION_JOB_TYPES:
            raise ValueError(f"{job_type} is not a notification job type")
        if job_type in _handlers:
            raise ValueError(f"Duplicate notification handler for {job_type}")
        _handlers[job_type] = handler
        return handler

    return decorator


def get_handler(job_type: JobType | str) -> NotificationJobHandler | None:
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return [str(job_type) for job_type in _handlers]


# ============================================================================
# Helpers
# ============================================================================


def _require(payload: dict[str, Any], *fields: str) -> None:
    missing = [field for field in fields if not payload.get(field)]
    if missing:
        raise JobValidationError(f"{' and '.join(fields)} are required")


def _as_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def unique_ids(*groups: Iterable[Any]) -> list[str]:
    """Flatten id groups into distinct string ids, first occurrence wins."""
    seen: dict[str, None] = {}
    for group in groups:
        for value in group:
            user_id = _as_id(value)
            if user_id is not None:
                seen.setdefault(user_id, None)
    return list(seen)


def _id_list(payload: dict[str, Any], key: str) -> list[Any] | None:
    """An enriched id list from the payload, or None when absent or not a list."""
    value = payload.get(key)
    return value if isinstance(value, list) else None


async def _notify_all(ctx: NotificationContext, items: Sequence[NotificationData]) -> HandlerResult:
    if not items:
        return HandlerResult.skip()
    await ctx.service.create_many(items)
    return HandlerResult.ok(count=len(items))


def _soft_failure(ctx: NotificationContext, error: str, **extra: Any) -> HandlerResult:
    logger.info(
        "Referenced document not found",
        extra={"job_type": ctx.job.type.value, "error": error, **extra},
    )
    return HandlerResult.soft_failure(error)


# ============================================================================
# Social handlers
# ============================================================================


async def _resolve_post_owner(ctx: NotificationContext, owner_key: str) -> str | None:
    owner = _as_id(ctx.payload.get(owner_key))
    if owner is not None:
        return owner
    return _as_id(await ctx.references.get_post_owner(str(ctx.payload["postId"])))


@register_handler(JobType.POST_LIKED)
async def handle_post_liked(ctx: NotificationContext) -> HandlerResult:
    """Notify the post author; liking your own post notifies nobody."""
    _require(ctx.payload, "postId", "userId")
    post_id, liker = str(ctx.payload["postId"]), str(ctx.payload["userId"])

    owner = await _resolve_post_owner(ctx, "postOwnerId")
    if owner is None:
        return _soft_failure(ctx, "POST_NOT_FOUND", post_id=post_id)
    if owner == liker:
        return HandlerResult.skip()

    await ctx.service.create(
        NotificationData(
            receiver=owner,
            sender=liker,
            type=NotificationKind.LIKE,
            post=post_id,
            message="liked your post",
        )
    )
    return HandlerResult.ok()


@register_handler(JobType.COMMENT_ADDED)
async def handle_comment_added(ctx: NotificationContext) -> HandlerResult:
    """Notify the post author of a new comment."""
    _require(ctx.payload, "postId", "userId")
    post_id, commenter = str(ctx.payload["postId"]), str(ctx.payload["userId"])

    owner = await _resolve_post_owner(ctx, "postOwnerId")
    if owner is None:
        return _soft_failure(ctx, "POST_NOT_FOUND", post_id=post_id)
    if owner == commenter:
        return HandlerResult.skip()

    await ctx.service.create(
        NotificationData(
            receiver=owner,
            sender=commenter,
            type=NotificationKind.COMMENT,
            post=post_id,
            message="commented on your post",
        )
    )
    return HandlerResult.ok()


@register_handler(JobType.USER_FOLLOWED)
async def handle_user_followed(ctx: NotificationContext) -> HandlerResult:
    _require(ctx.payload, "followerId", "targetUserId")
    follower = str(ctx.payload["followerId"])
    target = str(ctx.payload["targetUserId"])
    if follower == target:
        return HandlerResult.skip()

    await ctx.service.create(
        NotificationData(
            receiver=target,
            sender=follower,
            type=NotificationKind.FOLLOW,
            message="started following you",
        )
    )
    return HandlerResult.ok()


# ============================================================================
# Moderation handlers
# ============================================================================


@register_handler(JobType.POST_REMOVED)
async def handle_post_removed(ctx: NotificationContext) -> HandlerResult:
    """Tell the author their post was taken down. ``userId`` is the author."""
    _require(ctx.payload, "postId")
    post_id = str(ctx.payload["postId"])

    owner = await _resolve_post_owner(ctx, "userId")
    if owner is None:
        return _soft_failure(ctx, "POST_NOT_FOUND", post_id=post_id)

    await ctx.service.create(
        NotificationData(
            receiver=owner,
            sender=_as_id(ctx.payload.get("adminId")),
            type=NotificationKind.POST_REMOVED,
            post=post_id,
            message=STANDARDS_VIOLATION_POST,
        )
    )
    return HandlerResult.ok()


@register_handler(JobType.USER_WARNED)
async def handle_user_warned(ctx: NotificationContext) -> HandlerResult:
    _require(ctx.payload, "userId")

    await ctx.service.create(
        NotificationData(
            receiver=str(ctx.payload["userId"]),
            sender=_as_id(ctx.payload.get("adminId")),
            type=NotificationKind.USER_WARNED,
            message="Your account received a warning from an administrator",
            content=ctx.payload.get("resolutionDetails")
            or (
                "You violated the MACha community rules. Please follow them to avoid "
                "having your account locked."
            ),
        )
    )
    return HandlerResult.ok()


# ============================================================================
# Event handlers
# ============================================================================


async def _attendees(ctx: NotificationContext, event_id: str) -> list[Any]:
    enriched = _id_list(ctx.payload, "rsvpUserIds")
    if enriched is not None:
        return enriched
    return await ctx.references.get_attendee_ids(event_id)


async def _event_title(ctx: NotificationContext, event_id: str, fetched: Any = None) -> str:
    title = ctx.payload.get("eventTitle")
    if title:
        return str(title)
    if fetched is not None:
        return fetched.title or DEFAULT_EVENT_TITLE
    if _id_list(ctx.payload, "rsvpUserIds") is not None:
        # Enriched jobs never hit the database
        return DEFAULT_EVENT_TITLE
    event = await ctx.references.get_event(event_id)
    return event.title if event is not None and event.title else DEFAULT_EVENT_TITLE


@register_handler(JobType.EVENT_UPDATE_CREATED)
async def handle_event_update_created(ctx: NotificationContext) -> HandlerResult:
    """Fan out an event update to everyone going or interested, except the author."""
    _require(ctx.payload, "eventId", "userId")
    event_id, author = str(ctx.payload["eventId"]), str(ctx.payload["userId"])

    recipients = [
        user_id for user_id in unique_ids(await _attendees(ctx, event_id)) if user_id != author
    ]
    if not recipients:
        return HandlerResult.skip()

    title = await _event_title(ctx, event_id)
    content = ctx.payload.get("updateContent") or "There is a new update about the event"
    return await _notify_all(
        ctx,
        [
            NotificationData(
                receiver=receiver,
                sender=author,
                type=NotificationKind.EVENT_UPDATE,
                event=event_id,
                message=f'The event "{title}" has a new update',
                content=content,
            )
            for receiver in recipients
        ],
    )


@register_handler(JobType.EVENT_REMOVED)
async def handle_event_removed(ctx: NotificationContext) -> HandlerResult:
    """Notify the creator and every attendee once each, with different wording."""
    _require(ctx.payload, "eventId")
    event_id = str(ctx.payload["eventId"])

    creator = _as_id(ctx.payload.get("creatorId"))
    attendees = _id_list(ctx.payload, "rsvpUserIds")
    title = ctx.payload.get("eventTitle")

    if creator is None or attendees is None:
        event = await ctx.references.get_event(event_id)
        if event is None:
            return _soft_failure(ctx, "EVENT_NOT_FOUND", event_id=event_id)
        creator = _as_id(event.creator_id)
        if creator is None:
            return _soft_failure(ctx, "CREATOR_NOT_FOUND", event_id=event_id)
        attendees = await ctx.references.get_attendee_ids(event_id)
        title = title or event.title

    title = title or DEFAULT_EVENT_TITLE
    details = ctx.payload.get("resolutionDetails")
    admin = _as_id(ctx.payload.get("adminId"))

    items = []
    for receiver in unique_ids([creator], attendees):
        if receiver == creator:
            message = f'Your event "{title}" was cancelled for violating the community standards'
            content = details or STANDARDS_VIOLATION_EVENT
        else:
            message = f'The event "{title}" you were going to or interested in was cancelled'
            content = details or "The event was cancelled for violating the community standards"
        items.append(
            NotificationData(
                receiver=receiver,
                sender=admin,
                type=NotificationKind.EVENT_REMOVED,
                event=event_id,
                message=message,
                content=content,
            )
        )
    return await _notify_all(ctx, items)


@register_handler(JobType.EVENT_STARTED)
async def handle_event_started(ctx: NotificationContext) -> HandlerResult:
    """Tell attendees an event has started. The creator is not notified."""
    _require(ctx.payload, "eventId")
    event_id = str(ctx.payload["eventId"])

    creator = _as_id(ctx.payload.get("creatorId"))
    event = None
    if creator is None and _id_list(ctx.payload, "rsvpUserIds") is None:
        event = await ctx.references.get_event(event_id)
        if event is None:
            return _soft_failure(ctx, "EVENT_NOT_FOUND", event_id=event_id)
        creator = _as_id(event.creator_id)

    recipients = [
        user_id for user_id in unique_ids(await _attendees(ctx, event_id)) if user_id != creator
    ]
    if not recipients:
        return HandlerResult.skip()

    title = await _event_title(ctx, event_id, fetched=event)
    return await _notify_all(
        ctx,
        [
            NotificationData(
                receiver=receiver,
                sender=creator,
                type=NotificationKind.EVENT_STARTED,
                event=event_id,
                message=f'The event "{title}" has started',
            )
            for receiver in recipients
        ],
    )


# ============================================================================
# Campaign and escrow handlers
# ============================================================================


@register_handler(JobType.CAMPAIGN_CREATED)
async def handle_campaign_created(ctx: NotificationContext) -> HandlerResult:
    """Nothing to notify yet; campaigns are announced once approved."""
    return HandlerResult.skip()


async def _campaign_parts(
    ctx: NotificationContext, campaign_id: str
) -> tuple[Any, str | None, str]:
    """Load the campaign only when the payload lacks its creator or title."""
    creator = _as_id(ctx.payload.get("creatorId"))
    title = ctx.payload.get("campaignTitle")
    campaign = None
    if creator is None or not title:
        campaign = await ctx.references.get_campaign(campaign_id)
        if campaign is not None:
            creator = creator or _as_id(campaign.creator_id)
            title = title or campaign.title
    return campaign, creator, str(title or DEFAULT_CAMPAIGN_TITLE)


async def _donors(ctx: NotificationContext, campaign_id: str) -> list[Any]:
    enriched = _id_list(ctx.payload, "donorIds")
    if enriched is not None:
        return enriched
    return await ctx.references.get_donor_ids(campaign_id)


@register_handler(JobType.ESCROW_THRESHOLD_REACHED)
async def handle_escrow_threshold_reached(ctx: NotificationContext) -> HandlerResult:
    """Ask every donor to vote on the withdrawal request."""
    _require(ctx.payload, "campaignId")
    campaign_id = str(ctx.payload["campaignId"])

    creator = _as_id(ctx.payload.get("creatorId"))
    title = ctx.payload.get("campaignTitle")
    if not title:
        _, creator, title = await _campaign_parts(ctx, campaign_id)

    recipients = [
        user_id for user_id in unique_ids(await _donors(ctx, campaign_id)) if user_id != creator
    ]
    if not recipients:
        return HandlerResult.skip()

    milestone = ctx.payload.get("milestonePercentage")
    reached = f" reached {milestone}% of its goal and" if milestone else ""
    return await _notify_all(
        ctx,
        [
            NotificationData(
                receiver=receiver,
                sender=creator,
                type=NotificationKind.ESCROW_THRESHOLD_REACHED,
                campaign=campaign_id,
                message=f'The campaign "{title}"{reached} requested a withdrawal. Cast your vote.',
            )
            for receiver in recipients
        ],
    )


@register_handler(JobType.ESCROW_APPROVED_BY_ADMIN)
async def handle_escrow_approved(ctx: NotificationContext) -> HandlerResult:
    """Tell the creator the withdrawal was released and the donors it was approved."""
    _require(ctx.payload, "campaignId")
    campaign_id = str(ctx.payload["campaignId"])

    campaign, creator, title = await _campaign_parts(ctx, campaign_id)
    if creator is None:
        return _soft_failure(ctx, "CAMPAIGN_NOT_FOUND", campaign_id=campaign_id)

    admin = _as_id(ctx.payload.get("adminId"))
    amount = ctx.payload.get("amount")
    amount_text = f" of {amount}" if amount else ""

    items = []
    for receiver in unique_ids([creator], await _donors(ctx, campaign_id)):
        if receiver == creator:
            message = f'Your withdrawal{amount_text} for "{title}" was approved and released'
        else:
            message = f'The withdrawal for "{title}" that you voted on was approved'
        items.append(
            NotificationData(
                receiver=receiver,
                sender=admin,
                type=NotificationKind.ESCROW_APPROVED,
                campaign=campaign_id,
                message=message,
            )
        )
    return await _notify_all(ctx, items)


_missing = NOTIFICATION_JOB_TYPES - set(_handlers)
if _missing:
    raise RuntimeError(f"Notification job types without a handler: {sorted(_missing)}")


class NotificationHandler:
    """Dispatches notification jobs to their registered handler."""

    def __init__(self, service: NotificationService, references: ReferenceRepository):
        self._service = service
        self._references = references

    async def handle(self, job: Job) -> HandlerResult:
        """
        Run the handler for ``job.type``.

        Raises:
            JobValidationError: Unknown type or missing required payload fields.
            DependencyMissingError: A needed reference model is unavailable.
        """
        handler = get_handler(job.type)
        if handler is None:
            raise JobValidationError(f"Unknown notification job type: {job.type}")

        ctx = NotificationContext(job=job, service=self._service, references=self._references)
        result = await handler(ctx)
        logger.info(
            "Notification job handled",
            extra={
                "job_type": job.type.value,
                "skipped": result.skipped,
                "count": result.count,
                "soft_error": result.error,
            },
        )
        return result
