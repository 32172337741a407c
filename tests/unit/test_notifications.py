"""
Unit tests for notification handlers and the notification service.
"""

import json
from types import SimpleNamespace

import pytest

from jobpipe.constants import NOTIFICATION_JOB_TYPES, JobType, NotificationKind
from jobpipe.db.repository import ReferenceRepository
from jobpipe.errors import DependencyMissingError, JobValidationError
from jobpipe.notifications.handler import (
    NotificationHandler,
    list_handlers,
    register_handler,
    unique_ids,
)
from jobpipe.notifications.service import NotificationService
from jobpipe.types.events import NotificationData
from jobpipe.types.job import create_job


class RecordingService:
    """Collects notifications instead of writing them."""

    def __init__(self):
        self.created: list[NotificationData] = []

    async def create(self, data):
        self.created.append(data)
        return data

    async def create_many(self, items):
        self.created.extend(items)
        return list(items)


class FakeReferences:
    """In-memory reference lookups that count their calls."""

    def __init__(self, posts=None, events=None, attendees=None, campaigns=None, donors=None):
        self.posts = posts or {}
        self.events = events or {}
        self.attendees = attendees or {}
        self.campaigns = campaigns or {}
        self.donors = donors or {}
        self.calls = 0

    async def get_post_owner(self, post_id):
        self.calls += 1
        return self.posts.get(post_id)

    async def get_event(self, event_id):
        self.calls += 1
        return self.events.get(event_id)

    async def get_attendee_ids(self, event_id):
        self.calls += 1
        return list(self.attendees.get(event_id, []))

    async def get_campaign(self, campaign_id):
        self.calls += 1
        return self.campaigns.get(campaign_id)

    async def get_donor_ids(self, campaign_id):
        self.calls += 1
        return list(self.donors.get(campaign_id, []))


@pytest.fixture
def service():
    return RecordingService()


@pytest.fixture
def references():
    return FakeReferences(
        posts={"p1": "u1"},
        events={"e1": SimpleNamespace(creator_id="c1", title="Charity Run")},
        attendees={"e1": ["a1", "a2", "c1", "a1"]},
        campaigns={"k1": SimpleNamespace(creator_id="c9", title="Flood Relief")},
        donors={"k1": ["d1", "d2", "c9"]},
    )


@pytest.fixture
def handler(service, references):
    return NotificationHandler(service, references)


def job(job_type, payload):
    return create_job(job_type, payload, {"userId": payload.get("userId")})


class TestRegistry:
    """Tests for the handler registry."""

    def test_every_notification_type_is_registered(self):
        """Each notification job type has exactly one handler."""
        assert set(list_handlers()) == {str(t) for t in NOTIFICATION_JOB_TYPES}

    def test_duplicate_registration_is_rejected(self):
        """A second handler for a type is refused."""
        with pytest.raises(ValueError, match="Duplicate"):

            @register_handler(JobType.POST_LIKED)
            async def another(ctx):
                pass

    def test_mail_type_is_rejected(self):
        """Mail job types cannot get a notification handler."""
        with pytest.raises(ValueError, match="not a notification job type"):

            @register_handler(JobType.SEND_OTP)
            async def mail(ctx):
                pass

    @pytest.mark.asyncio
    async def test_mail_job_is_unknown(self, handler):
        """A mail job routed to the notification handler is a validation error."""
        with pytest.raises(JobValidationError, match="Unknown notification job type"):
            await handler.handle(job(JobType.SEND_OTP, {"email": "a@b.co"}))

    def test_unique_ids(self):
        """Ids are flattened, stringified and deduplicated in order."""
        assert unique_ids(["a", "b"], [None, "a", 3, ""]) == ["a", "b", "3"]


class TestSocialHandlers:
    """Tests for like, comment and follow notifications."""

    @pytest.mark.asyncio
    async def test_comment_notifies_post_owner(self, handler, service):
        """The post owner gets one comment notification from the commenter."""
        result = await handler.handle(job(JobType.COMMENT_ADDED, {"postId": "p1", "userId": "u2"}))

        assert result.success
        [created] = service.created
        assert created.receiver == "u1"
        assert created.sender == "u2"
        assert created.type is NotificationKind.COMMENT
        assert created.post == "p1"

    @pytest.mark.asyncio
    async def test_self_like_is_skipped(self, handler, service):
        """Liking your own post creates nothing."""
        result = await handler.handle(job(JobType.POST_LIKED, {"postId": "p1", "userId": "u1"}))

        assert result.skipped
        assert service.created == []

    @pytest.mark.asyncio
    async def test_enriched_owner_skips_lookup(self, handler, service, references):
        """A producer-supplied owner id is used without a database lookup."""
        await handler.handle(
            job(JobType.POST_LIKED, {"postId": "p404", "userId": "u2", "postOwnerId": "u7"})
        )

        assert references.calls == 0
        assert service.created[0].receiver == "u7"
        assert service.created[0].type is NotificationKind.LIKE

    @pytest.mark.asyncio
    async def test_deleted_post_is_soft_failure(self, handler, service):
        """A like on a deleted post is acknowledged without a notification."""
        result = await handler.handle(job(JobType.POST_LIKED, {"postId": "gone", "userId": "u2"}))

        assert result.success is False
        assert result.error == "POST_NOT_FOUND"
        assert service.created == []

    @pytest.mark.asyncio
    async def test_missing_fields(self, handler):
        """Required payload fields are validated."""
        with pytest.raises(JobValidationError, match="postId and userId are required"):
            await handler.handle(job(JobType.COMMENT_ADDED, {"postId": "p1"}))

    @pytest.mark.asyncio
    async def test_follow(self, handler, service):
        """The followed user is notified."""
        await handler.handle(
            job(JobType.USER_FOLLOWED, {"followerId": "u1", "targetUserId": "u2"})
        )

        [created] = service.created
        assert (created.receiver, created.sender) == ("u2", "u1")
        assert created.type is NotificationKind.FOLLOW

    @pytest.mark.asyncio
    async def test_missing_reference_model_is_permanent(self, service):
        """A lookup against a model this process lacks cannot be retried."""
        handler = NotificationHandler(service, ReferenceRepository(models={}))

        with pytest.raises(DependencyMissingError, match="Post model not available"):
            await handler.handle(job(JobType.POST_LIKED, {"postId": "p1", "userId": "u2"}))


class TestModerationHandlers:
    """Tests for moderation notifications."""

    @pytest.mark.asyncio
    async def test_post_removed(self, handler, service):
        """The author is told by the admin that the post was removed."""
        await handler.handle(
            job(JobType.POST_REMOVED, {"postId": "p1", "userId": "u1", "adminId": "admin"})
        )

        [created] = service.created
        assert created.receiver == "u1"
        assert created.sender == "admin"
        assert created.type is NotificationKind.POST_REMOVED

    @pytest.mark.asyncio
    async def test_user_warned_uses_resolution_details(self, handler, service):
        """The admin's resolution text becomes the content."""
        await handler.handle(
            job(JobType.USER_WARNED, {"userId": "u3", "resolutionDetails": "Spam links"})
        )

        [created] = service.created
        assert created.content == "Spam links"
        assert created.type is NotificationKind.USER_WARNED


class TestEventHandlers:
    """Tests for event notifications."""

    @pytest.mark.asyncio
    async def test_event_removed_dedupes_creator(self, handler, service):
        """A creator who also RSVPed gets exactly one, creator-worded, notification."""
        result = await handler.handle(
            job(
                JobType.EVENT_REMOVED,
                {
                    "eventId": "e1",
                    "creatorId": "c1",
                    "rsvpUserIds": ["a1", "c1", "a2", "a1"],
                    "eventTitle": "Charity Run",
                },
            )
        )

        assert result.count == 3
        receivers = [n.receiver for n in service.created]
        assert receivers == ["c1", "a1", "a2"]
        by_receiver = {n.receiver: n for n in service.created}
        assert by_receiver["c1"].message.startswith('Your event "Charity Run"')
        assert "you were going to" in by_receiver["a1"].message

    @pytest.mark.asyncio
    async def test_event_removed_falls_back_to_database(self, handler, service, references):
        """Without enrichment the event and attendees are looked up."""
        await handler.handle(job(JobType.EVENT_REMOVED, {"eventId": "e1"}))

        assert references.calls == 2
        assert sorted(n.receiver for n in service.created) == ["a1", "a2", "c1"]

    @pytest.mark.asyncio
    async def test_event_removed_missing_event(self, handler, service):
        """A deleted event is a soft failure."""
        result = await handler.handle(job(JobType.EVENT_REMOVED, {"eventId": "nope"}))

        assert result.error == "EVENT_NOT_FOUND"
        assert service.created == []

    @pytest.mark.asyncio
    async def test_event_update_excludes_author(self, handler, service):
        """The author of the update is not notified about it."""
        result = await handler.handle(
            job(
                JobType.EVENT_UPDATE_CREATED,
                {"eventId": "e1", "userId": "c1", "updateContent": "Start moved to 9am"},
            )
        )

        assert result.count == 2
        assert {n.receiver for n in service.created} == {"a1", "a2"}
        assert all(n.content == "Start moved to 9am" for n in service.created)
        assert all('"Charity Run"' in n.message for n in service.created)

    @pytest.mark.asyncio
    async def test_event_update_without_attendees(self, handler, service):
        """No attendees means nothing to do."""
        result = await handler.handle(
            job(JobType.EVENT_UPDATE_CREATED, {"eventId": "e1", "userId": "c1", "rsvpUserIds": []})
        )

        assert result.skipped
        assert service.created == []

    @pytest.mark.asyncio
    async def test_event_started(self, handler, service):
        """Attendees other than the creator are told the event started."""
        await handler.handle(job(JobType.EVENT_STARTED, {"eventId": "e1"}))

        assert {n.receiver for n in service.created} == {"a1", "a2"}
        assert all(n.sender == "c1" for n in service.created)
        assert all(n.type is NotificationKind.EVENT_STARTED for n in service.created)


class TestCampaignHandlers:
    """Tests for campaign and escrow notifications."""

    @pytest.mark.asyncio
    async def test_campaign_created_is_skipped(self, handler, service):
        """Campaign creation has no notification."""
        result = await handler.handle(job(JobType.CAMPAIGN_CREATED, {"campaignId": "k1"}))

        assert result.skipped
        assert service.created == []

    @pytest.mark.asyncio
    async def test_escrow_threshold_notifies_donors(self, handler, service):
        """Every donor except the creator is asked to vote."""
        result = await handler.handle(
            job(JobType.ESCROW_THRESHOLD_REACHED, {"campaignId": "k1", "milestonePercentage": 50})
        )

        assert result.count == 2
        assert {n.receiver for n in service.created} == {"d1", "d2"}
        assert all("50%" in n.message for n in service.created)
        assert all(n.type is NotificationKind.ESCROW_THRESHOLD_REACHED for n in service.created)

    @pytest.mark.asyncio
    async def test_escrow_approved(self, handler, service):
        """The creator and each donor are notified once."""
        result = await handler.handle(
            job(JobType.ESCROW_APPROVED_BY_ADMIN, {"campaignId": "k1", "adminId": "admin"})
        )

        assert result.count == 3
        by_receiver = {n.receiver: n for n in service.created}
        assert set(by_receiver) == {"c9", "d1", "d2"}
        assert "Your withdrawal" in by_receiver["c9"].message
        assert all(n.sender == "admin" for n in service.created)

    @pytest.mark.asyncio
    async def test_escrow_approved_missing_campaign(self, handler, service):
        """An unknown campaign is a soft failure."""
        result = await handler.handle(job(JobType.ESCROW_APPROVED_BY_ADMIN, {"campaignId": "x"}))

        assert result.error == "CAMPAIGN_NOT_FOUND"
        assert service.created == []


class TestNotificationService:
    """Tests for NotificationService."""

    @pytest.mark.asyncio
    async def test_create_persists_then_publishes(
        self, publisher, session_scope, fake_session, fake_redis, metrics
    ):
        """The record is written and an event is published for the receiver."""
        service = NotificationService(publisher, session_scope=session_scope, metrics=metrics)

        record = await service.create(
            NotificationData(receiver="u1", sender="u2", type=NotificationKind.LIKE, post="p1")
        )

        assert fake_session.added == [record]
        assert record.receiver == "u1"
        assert record.created_at is not None
        [(channel, raw)] = fake_redis.published
        assert channel == "notification:new"
        event = json.loads(raw)
        assert event["recipientId"] == "u1"
        assert event["notification"]["_id"] == str(record.id)
        assert event["notification"]["type"] == "like"
        assert metrics.notifications_created.labels(kind="like", published="true")._value.get() == 1

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_record(
        self, publisher, session_scope, fake_session, fake_redis, metrics
    ):
        """A Redis outage never fails the notification."""
        fake_redis.fail_with = ConnectionError("redis down")
        service = NotificationService(publisher, session_scope=session_scope, metrics=metrics)

        record = await service.create(
            NotificationData(receiver="u1", type=NotificationKind.SYSTEM, message="hello")
        )

        assert fake_session.added == [record]
        created = metrics.notifications_created.labels(kind="system", published="false")
        assert created._value.get() == 1

    @pytest.mark.asyncio
    async def test_create_many(self, publisher, session_scope, fake_session, fake_redis, metrics):
        """One record and one event per item."""
        service = NotificationService(publisher, session_scope=session_scope, metrics=metrics)
        items = [
            NotificationData(receiver=r, type=NotificationKind.EVENT_STARTED, event="e1")
            for r in ("a1", "a2", "a3")
        ]

        records = await service.create_many(items)

        assert [r.receiver for r in records] == ["a1", "a2", "a3"]
        assert len(fake_session.added) == 3
        assert len(fake_redis.published) == 3
