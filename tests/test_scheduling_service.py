"""Tests for queue, schedule and post-now operations."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.core.errors import (
    DispatchError,
    MissingContent,
    MissingCredentials,
    NoSlotAvailable,
    PastSchedule,
    SlotTaken,
    ThreadLocked,
    TransientPublishError,
)
from app.models.account import Account
from app.models.post import Post
from app.schemas.compose import ComposeQueueRequest, ComposeRequest, ComposeScheduleRequest
from app.schemas.post import PostDraft, PostEdit
from app.services import scheduling_service, thread_store
from app.services.cache import ContentCache
from app.services.publisher import publish_thread
from app.services.slot_selector import to_unix_ms
from tests.conftest import FakeTwitterClient
from tests.test_publisher import mark_scheduled


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


async def post_count(db):
    return await db.scalar(select(func.count(Post.id)))


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedules_thread_at_explicit_time(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one", "two")
        at = utc(2024, 1, 3, 15, 30)

        outcome = await scheduling_service.schedule_thread(db, user, thread_id, at, dispatcher, now=fixed_now)

        assert outcome.fire_at == at and not outcome.queued
        assert dispatcher.scheduled[0]["fire_at_unix"] == int(at.timestamp())
        posts = await thread_store.get_thread(db, thread_id)
        for post in posts:
            assert post.is_scheduled and not post.is_queued
            assert post.scheduled_unix == to_unix_ms(at)
            assert post.scheduled_for == datetime(2024, 1, 3, 15, 30)
            assert post.qstash_id == outcome.dispatch_id

    @pytest.mark.asyncio
    async def test_past_time_rejected_before_dispatch(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")

        with pytest.raises(PastSchedule):
            await scheduling_service.schedule_thread(db, user, thread_id, fixed_now, dispatcher, now=fixed_now)

        assert dispatcher.scheduled == []
        posts = await thread_store.get_thread(db, thread_id)
        assert not posts[0].is_scheduled

    @pytest.mark.asyncio
    async def test_dispatch_failure_leaves_nothing_scheduled(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one", "two")
        dispatcher.fail_schedule = True

        with pytest.raises(DispatchError):
            await scheduling_service.schedule_thread(
                db, user, thread_id, utc(2024, 1, 2, 10), dispatcher, now=fixed_now
            )

        posts = await thread_store.get_thread(db, thread_id)
        assert all(not p.is_scheduled and p.scheduled_unix is None and p.qstash_id is None for p in posts)

    @pytest.mark.asyncio
    async def test_occupied_instant_is_rejected(self, db, user, account, make_thread, dispatcher, fixed_now):
        at = utc(2024, 1, 2, 10)
        first = await make_thread("first")
        second = await make_thread("second")
        await scheduling_service.schedule_thread(db, user, first, at, dispatcher, now=fixed_now)

        with pytest.raises(SlotTaken):
            await scheduling_service.schedule_thread(db, user, second, at, dispatcher, now=fixed_now)

        assert len(dispatcher.scheduled) == 1

    @pytest.mark.asyncio
    async def test_partly_published_thread_keeps_its_instant(self, db, user, account, make_thread, dispatcher, twitter, client_factory, fixed_now):
        at = utc(2024, 1, 2, 15)
        first = await make_thread("a0", "a1")
        second = await make_thread("b0")
        await scheduling_service.schedule_thread(db, user, first, at, dispatcher, now=fixed_now)
        twitter.failures[1] = TransientPublishError("X is down")
        with pytest.raises(TransientPublishError):
            await publish_thread(db, first, client_factory, sleep=AsyncMock())

        with pytest.raises(SlotTaken):
            await scheduling_service.schedule_thread(db, user, second, at, dispatcher, now=fixed_now)

        assert len(dispatcher.scheduled) == 1
        posts = await thread_store.get_thread(db, second)
        assert not posts[0].is_scheduled

    @pytest.mark.asyncio
    async def test_uses_the_account_the_thread_was_written_for(self, db, user, account, make_thread, dispatcher, fixed_now):
        bob = Account(user_id=user.id, provider_id="twitter", username="bob", access_token="t", access_secret="s")
        db.add(bob)
        await db.commit()
        bob_id = bob.id
        alice_thread = await make_thread("alice post")
        bob_thread = await thread_store.create_thread(db, user.id, bob_id, [PostDraft(content="bob post")])
        await db.commit()
        await scheduling_service.queue_thread(db, user, alice_thread, dispatcher, now=fixed_now)

        outcome = await scheduling_service.queue_thread(db, user, bob_thread, dispatcher, now=fixed_now)

        # alice's first slot does not occupy bob's queue
        assert outcome.fire_at == utc(2024, 1, 1, 10)
        assert [d["account_id"] for d in dispatcher.scheduled] == [account.id, bob_id]

        seen = []

        def recording_factory(acct):
            seen.append(acct.username)
            return FakeTwitterClient(username=acct.username)

        await publish_thread(db, bob_thread, recording_factory, sleep=AsyncMock())
        assert seen == ["bob"]

    @pytest.mark.asyncio
    async def test_already_scheduled_thread_is_locked(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")
        await scheduling_service.schedule_thread(db, user, thread_id, utc(2024, 1, 2, 10), dispatcher, now=fixed_now)

        with pytest.raises(ThreadLocked):
            await scheduling_service.schedule_thread(
                db, user, thread_id, utc(2024, 1, 5, 10), dispatcher, now=fixed_now
            )

    @pytest.mark.asyncio
    async def test_account_without_credentials(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")
        account.access_secret = None

        with pytest.raises(MissingCredentials):
            await scheduling_service.schedule_thread(
                db, user, thread_id, utc(2024, 1, 2, 10), dispatcher, now=fixed_now
            )
        assert dispatcher.scheduled == []


class TestQueue:
    @pytest.mark.asyncio
    async def test_queues_into_next_free_slots(self, db, user, account, make_thread, dispatcher, fixed_now):
        first = await make_thread("first")
        second = await make_thread("second")
        third = await make_thread("third")

        outcomes = [
            await scheduling_service.queue_thread(db, user, t, dispatcher, now=fixed_now)
            for t in (first, second, third)
        ]

        # user frequency is 2: 10:00 and 12:00
        assert [o.fire_at for o in outcomes] == [utc(2024, 1, 1, 10), utc(2024, 1, 1, 12), utc(2024, 1, 2, 10)]
        assert all(o.queued for o in outcomes)
        posts = await thread_store.get_thread(db, third)
        assert posts[0].is_queued and posts[0].is_scheduled

    @pytest.mark.asyncio
    async def test_queue_full(self, db, user, account, make_thread, dispatcher, fixed_now, monkeypatch):
        monkeypatch.setattr(settings, "QUEUE_MAX_DAYS_AHEAD", 0)
        for content in ("a", "b"):
            await scheduling_service.queue_thread(db, user, await make_thread(content), dispatcher, now=fixed_now)
        overflow = await make_thread("c")

        with pytest.raises(NoSlotAvailable):
            await scheduling_service.queue_thread(db, user, overflow, dispatcher, now=fixed_now)

        posts = await thread_store.get_thread(db, overflow)
        assert not posts[0].is_scheduled
        assert len(dispatcher.scheduled) == 2

    def test_full_queue_message(self):
        assert NoSlotAvailable(90).message == "Queue for the next 3 months is already full!"
        assert NoSlotAvailable(0).message == "Queue is already full!"

    @pytest.mark.asyncio
    async def test_concurrent_claim_forces_reselection(self, db, user, account, make_thread, dispatcher, fixed_now, monkeypatch):
        first = await make_thread("first")
        second = await make_thread("second")
        await scheduling_service.queue_thread(db, user, first, dispatcher, now=fixed_now)

        real_loader = thread_store.load_occupied_slots
        calls = []

        async def stale_then_real(db_, account_id, exclude_thread=None):
            calls.append(account_id)
            if len(calls) == 1:
                return set()  # the other request's slot is not visible yet
            return await real_loader(db_, account_id, exclude_thread)

        monkeypatch.setattr(thread_store, "load_occupied_slots", stale_then_real)

        outcome = await scheduling_service.queue_thread(db, user, second, dispatcher, now=fixed_now)

        assert outcome.fire_at == utc(2024, 1, 1, 12)
        assert len(calls) == 2
        scheduled = await db.scalars(
            select(Post.scheduled_unix).where(Post.is_scheduled.is_(True), Post.position == 0)
        )
        values = list(scheduled)
        assert len(values) == len(set(values)) == 2

    @pytest.mark.asyncio
    async def test_queue_uses_user_timezone(self, db, user, account, make_thread, dispatcher, fixed_now):
        user.timezone = "Europe/Berlin"
        thread_id = await make_thread("hallo")

        outcome = await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)

        # 10:00 in Berlin is 09:00 UTC, which is not after now
        assert outcome.fire_at == utc(2024, 1, 1, 11)

    @pytest.mark.asyncio
    async def test_posting_window_respected_when_enabled(self, db, user, account, make_thread, dispatcher, fixed_now, monkeypatch):
        monkeypatch.setattr(settings, "QUEUE_RESPECT_POSTING_WINDOW", True)
        user.posting_window_start = 11
        user.posting_window_end = 18
        thread_id = await make_thread("one")

        outcome = await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)

        assert outcome.fire_at == utc(2024, 1, 1, 12)

    @pytest.mark.asyncio
    async def test_next_slot_preview_does_not_reserve(self, db, user, account, make_thread, dispatcher, fixed_now):
        preview = await scheduling_service.next_queue_slot(db, user, account, now=fixed_now)
        again = await scheduling_service.next_queue_slot(db, user, account, now=fixed_now)

        assert preview == again == utc(2024, 1, 1, 10)
        assert dispatcher.scheduled == []


class TestPostNow:
    @pytest.mark.asyncio
    async def test_publishes_inline(self, db, user, account, client_factory, twitter):
        drafts = [PostDraft(content="hello"), PostDraft(content="world")]

        result = await scheduling_service.post_now(db, user, account, drafts, client_factory)

        assert result.thread_url == "https://x.com/alice/status/1000"
        assert twitter.calls[1]["reply_to"] == "1000"

    @pytest.mark.asyncio
    async def test_missing_credentials_creates_nothing(self, db, user, account, client_factory, twitter):
        account.access_token = None

        with pytest.raises(MissingCredentials):
            await scheduling_service.post_now(db, user, account, [PostDraft(content="hello")], client_factory)

        assert await post_count(db) == 0
        assert twitter.calls == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_delete_after_dispatch_already_fired(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one", "two")
        outcome = await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)
        dispatcher.cancel_result = False

        await thread_store.delete_thread(db, thread_id, user.id, dispatcher)
        await db.commit()

        assert dispatcher.cancelled == [outcome.dispatch_id]
        assert await post_count(db) == 0

    @pytest.mark.asyncio
    async def test_delete_survives_cancel_failure(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")
        await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)
        dispatcher.cancel_error = True

        await thread_store.delete_thread(db, thread_id, user.id, dispatcher)
        await db.commit()

        assert await post_count(db) == 0

    @pytest.mark.asyncio
    async def test_unschedule_cancels_and_resets(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")
        outcome = await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)

        posts = await scheduling_service.unschedule_thread(db, user, thread_id, dispatcher)

        assert dispatcher.cancelled == [outcome.dispatch_id]
        assert not posts[0].is_scheduled and posts[0].scheduled_unix is None and posts[0].qstash_id is None
        # the freed slot is offered again
        assert await scheduling_service.next_queue_slot(db, user, account, now=fixed_now) == outcome.fire_at

    @pytest.mark.asyncio
    async def test_reschedule_cancels_old_dispatch(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")
        old = await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)
        at = utc(2024, 1, 4, 8, 15)

        new = await scheduling_service.reschedule_thread(db, user, thread_id, at, dispatcher, now=fixed_now)

        assert dispatcher.cancelled == [old.dispatch_id]
        assert new.dispatch_id != old.dispatch_id
        posts = await thread_store.get_thread(db, thread_id)
        assert posts[0].scheduled_unix == to_unix_ms(at)
        assert posts[0].qstash_id == new.dispatch_id
        assert not posts[0].is_queued

    @pytest.mark.asyncio
    async def test_reschedule_dispatch_failure_falls_back_to_draft(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")
        await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)
        dispatcher.fail_schedule = True

        with pytest.raises(DispatchError):
            await scheduling_service.reschedule_thread(
                db, user, thread_id, utc(2024, 1, 4, 8), dispatcher, now=fixed_now
            )

        posts = await thread_store.get_thread(db, thread_id)
        assert not posts[0].is_scheduled and posts[0].qstash_id is None

    @pytest.mark.asyncio
    async def test_reschedule_onto_partly_published_instant(self, db, user, account, make_thread, dispatcher, twitter, client_factory, fixed_now):
        at = utc(2024, 1, 3, 9)
        busy = await make_thread("a0", "a1")
        moving = await make_thread("b0")
        await scheduling_service.schedule_thread(db, user, busy, at, dispatcher, now=fixed_now)
        old = await scheduling_service.queue_thread(db, user, moving, dispatcher, now=fixed_now)
        twitter.failures[1] = TransientPublishError("X is down")
        with pytest.raises(TransientPublishError):
            await publish_thread(db, busy, client_factory, sleep=AsyncMock())

        with pytest.raises(SlotTaken):
            await scheduling_service.reschedule_thread(db, user, moving, at, dispatcher, now=fixed_now)

        assert dispatcher.cancelled == []
        posts = await thread_store.get_thread(db, moving)
        assert posts[0].is_scheduled and posts[0].scheduled_unix == old.unix_ms

    @pytest.mark.asyncio
    async def test_scheduled_thread_cannot_be_edited(self, db, user, account, make_thread, dispatcher, fixed_now):
        thread_id = await make_thread("one")
        await scheduling_service.queue_thread(db, user, thread_id, dispatcher, now=fixed_now)

        with pytest.raises(ThreadLocked):
            await thread_store.update_thread(db, thread_id, user.id, [PostEdit(content="changed")])

    @pytest.mark.asyncio
    async def test_clear_queue(self, db, user, account, make_thread, dispatcher, fixed_now):
        for content in ("a", "b"):
            await scheduling_service.queue_thread(db, user, await make_thread(content), dispatcher, now=fixed_now)
        draft = await make_thread("draft")

        removed = await scheduling_service.clear_queue(db, user, account, dispatcher)

        assert removed == 2
        assert len(dispatcher.cancelled) == 2
        remaining = await db.scalars(select(Post.thread_id))
        assert list(remaining) == [draft]

    @pytest.mark.asyncio
    async def test_queue_view_marks_occupied_slots(self, db, user, account, make_thread, dispatcher, fixed_now):
        queued = await make_thread("queued post")
        manual = await make_thread("manual post")
        await scheduling_service.queue_thread(db, user, queued, dispatcher, now=fixed_now)
        await scheduling_service.schedule_thread(db, user, manual, utc(2024, 1, 2, 16, 45), dispatcher, now=fixed_now)

        view = await scheduling_service.queue_view(db, user, account, days=2, now=fixed_now)

        today, tomorrow = view.days
        assert [s.thread_id for s in today.slots] == [queued, None]
        assert [s.scheduled_for for s in tomorrow.slots] == [utc(2024, 1, 2, 10), utc(2024, 1, 2, 12), utc(2024, 1, 2, 16, 45)]
        assert tomorrow.slots[-1].is_manual and tomorrow.slots[-1].thread_id == manual

    @pytest.mark.asyncio
    async def test_queue_view_lists_every_thread_sharing_an_instant(self, db, user, account, make_thread, dispatcher, twitter, client_factory, fixed_now):
        resumed = await make_thread("a0", "a1")
        outcome = await scheduling_service.queue_thread(db, user, resumed, dispatcher, now=fixed_now)
        twitter.failures[1] = TransientPublishError("X is down")
        with pytest.raises(TransientPublishError):
            await publish_thread(db, resumed, client_factory, sleep=AsyncMock())
        other = await make_thread("b0")
        await mark_scheduled(db, other, dispatch_id="msg_other", unix_ms=outcome.unix_ms)

        view = await scheduling_service.queue_view(db, user, account, days=1, now=fixed_now)

        holders = [s for s in view.days[0].slots if s.scheduled_unix == outcome.unix_ms]
        assert {s.thread_id for s in holders} == {resumed, other}
        assert {s.preview for s in holders} == {"a1", "b0"}


class TestCompose:
    @pytest.mark.asyncio
    async def test_queue_uses_cached_conversation_content(self, db, user, account, dispatcher, memory_repo, fixed_now):
        cache = ContentCache(memory_repo)
        await cache.set("chat-1", "Cached draft from the chat")
        request = ComposeQueueRequest(chat_id="chat-1", additional_posts=[PostDraft(content="follow up")])

        outcome = await scheduling_service.compose_queue(db, user, account, request, dispatcher, cache, now=fixed_now)

        posts = await thread_store.get_thread(db, outcome.thread_id)
        assert [p.content for p in posts] == ["Cached draft from the chat", "follow up"]
        assert posts[1].delay_ms == scheduling_service.DEFAULT_THREAD_DELAY_MS

    @pytest.mark.asyncio
    async def test_missing_content_creates_nothing(self, db, user, account, dispatcher, memory_repo, fixed_now):
        request = ComposeScheduleRequest(chat_id="empty", scheduled_at=utc(2024, 1, 2, 10))

        with pytest.raises(MissingContent):
            await scheduling_service.compose_schedule(
                db, user, account, request, dispatcher, ContentCache(memory_repo), now=fixed_now
            )

        assert await post_count(db) == 0

    @pytest.mark.asyncio
    async def test_failed_dispatch_discards_new_thread(self, db, user, account, dispatcher, fixed_now):
        dispatcher.fail_schedule = True
        request = ComposeQueueRequest(content="will not make it")

        with pytest.raises(DispatchError):
            await scheduling_service.compose_queue(db, user, account, request, dispatcher, now=fixed_now)

        assert await post_count(db) == 0

    @pytest.mark.asyncio
    async def test_past_schedule_creates_nothing(self, db, user, account, dispatcher, fixed_now):
        request = ComposeScheduleRequest(content="too late", scheduled_at=fixed_now - timedelta(minutes=1))

        with pytest.raises(PastSchedule):
            await scheduling_service.compose_schedule(db, user, account, request, dispatcher, now=fixed_now)

        assert await post_count(db) == 0

    @pytest.mark.asyncio
    async def test_post_now_with_explicit_content(self, db, user, account, client_factory, twitter):
        request = ComposeRequest(content="right now", conversation_context="User: ignore this line please")

        result = await scheduling_service.compose_post_now(db, user, account, request, client_factory=client_factory)

        assert twitter.calls[0]["text"] == "right now"
        assert result.success
