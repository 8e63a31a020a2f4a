"""Queue, schedule and post-now operations.

Scheduling follows the same sequence everywhere:

1. validate (future time, credentials, thread state) before touching anything
2. claim the instant on the thread's rows; the partial unique index
   ``uq_posts_account_slot`` rejects a second thread at the same instant
3. register the dispatch; on DispatchError the claim is rolled back
4. attach the dispatch id and commit; if that commit fails the dispatch is
   cancelled again

so a post is never left marked scheduled without a live dispatch behind it.
"""
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    DispatchError,
    InvalidThread,
    MissingContent,
    NoSlotAvailable,
    PastSchedule,
    SchedulerError,
    SlotTaken,
    ThreadLocked,
    ValidationError,
)
from app.models.account import Account
from app.models.post import Post
from app.models.user import User
from app.schemas.compose import ComposeQueueRequest, ComposeRequest, ComposeScheduleRequest, QueueDay, QueueSlot, QueueView
from app.schemas.post import PostDraft
from app.services import thread_store
from app.services.account_service import require_credentials
from app.services.cache import ContentCache
from app.services.content_resolver import resolve_content
from app.services.dispatcher import Dispatcher, reschedule
from app.services.publisher import PublishResult, publish_thread, resolve_account
from app.services.settings_service import preferences_for
from app.services.slot_selector import daily_slots, next_available_slot, occupied_by, to_unix_ms
from app.services.twitter_client import TwitterClient

log = structlog.get_logger()

DEFAULT_THREAD_DELAY_MS = 1000


@dataclass
class ScheduleOutcome:
    thread_id: UUID
    fire_at: datetime
    unix_ms: int
    dispatch_id: str
    queued: bool
    post_count: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _timezone_name(user: User, override: str | None) -> str:
    name = override or preferences_for(user).timezone
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}")
    return name


def _ensure_schedulable(posts: list[Post]) -> None:
    if all(p.is_published for p in posts):
        raise ThreadLocked("Thread has already been published")
    if any(p.is_scheduled for p in posts):
        raise ThreadLocked("Thread is already scheduled; reschedule it instead")


async def _cancel_quietly(dispatcher: Dispatcher, dispatch_id: str) -> None:
    try:
        await dispatcher.cancel(dispatch_id)
    except DispatchError as exc:
        log.warning("dispatch_cancel_failed", dispatch_id=dispatch_id, error=exc.message)


async def _dispatch_and_commit(
    db: AsyncSession,
    dispatcher: Dispatcher,
    *,
    user_id: UUID,
    account_id: UUID,
    thread_id: UUID,
    fire_at: datetime,
    unix_ms: int,
    queued: bool,
    post_count: int,
) -> ScheduleOutcome:
    try:
        dispatch_id = await dispatcher.schedule(
            thread_id=thread_id, user_id=user_id, account_id=account_id, fire_at_unix=unix_ms // 1000
        )
    except DispatchError:
        await db.rollback()
        log.error("schedule_rolled_back", thread_id=str(thread_id), unix_ms=unix_ms)
        raise

    await thread_store.attach_dispatch(db, thread_id, dispatch_id)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        await _cancel_quietly(dispatcher, dispatch_id)
        log.error("schedule_commit_failed", thread_id=str(thread_id), dispatch_id=dispatch_id, error=str(exc))
        raise SchedulerError("Problem with database") from exc

    log.info(
        "thread_scheduled",
        thread_id=str(thread_id),
        account_id=str(account_id),
        fire_at=fire_at.isoformat(),
        queued=queued,
        dispatch_id=dispatch_id,
    )
    return ScheduleOutcome(thread_id, fire_at, unix_ms, dispatch_id, queued, post_count)


async def _thread_account(db: AsyncSession, user: User, posts: list[Post]) -> Account:
    """The account the thread was written for; every dispatch and publish uses it."""
    return require_credentials(await resolve_account(db, posts, user.id, None))


async def _ensure_instant_free(db: AsyncSession, account_id: UUID, thread_id: UUID, unix_ms: int) -> None:
    # The unique index only sees position 0; partly published threads still hold their instant.
    if unix_ms in await thread_store.load_occupied_slots(db, account_id, exclude_thread=thread_id):
        raise SlotTaken()


async def schedule_thread(
    db: AsyncSession,
    user: User,
    thread_id: UUID,
    scheduled_at: datetime,
    dispatcher: Dispatcher,
    now: datetime | None = None,
) -> ScheduleOutcome:
    """Schedule a draft thread at an explicit instant on the thread's own account."""
    now = _aware(now or _utcnow())
    fire_at = _aware(scheduled_at).astimezone(timezone.utc).replace(microsecond=0)
    if fire_at <= now:
        raise PastSchedule()
    posts = await thread_store.get_thread(db, thread_id, user.id)
    account = await _thread_account(db, user, posts)
    _ensure_schedulable(posts)
    user_id, account_id = user.id, account.id

    unix_ms = to_unix_ms(fire_at)
    await _ensure_instant_free(db, account_id, thread_id, unix_ms)
    try:
        await thread_store.claim_slot(db, thread_id, fire_at, unix_ms, queued=False)
    except IntegrityError:
        await db.rollback()
        raise SlotTaken()
    return await _dispatch_and_commit(
        db,
        dispatcher,
        user_id=user_id,
        account_id=account_id,
        thread_id=thread_id,
        fire_at=fire_at,
        unix_ms=unix_ms,
        queued=False,
        post_count=len(posts),
    )


async def queue_thread(
    db: AsyncSession,
    user: User,
    thread_id: UUID,
    dispatcher: Dispatcher,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> ScheduleOutcome:
    """Schedule a draft thread into the next free preset slot of the thread's account."""
    now = _aware(now or _utcnow())
    tz_name = _timezone_name(user, tz_name)
    posts = await thread_store.get_thread(db, thread_id, user.id)
    account = await _thread_account(db, user, posts)
    _ensure_schedulable(posts)
    user_id, account_id = user.id, account.id  # rollback below expires ORM instances

    prefs = preferences_for(user)
    window = prefs.window if settings.QUEUE_RESPECT_POSTING_WINDOW else None
    occupied = await thread_store.load_occupied_slots(db, account_id)

    for attempt in range(settings.QUEUE_SLOT_RETRIES + 1):
        slot = next_available_slot(
            now, tz_name, prefs.frequency, settings.QUEUE_MAX_DAYS_AHEAD, occupied_by(occupied), window
        )
        if slot is None:
            raise NoSlotAvailable(settings.QUEUE_MAX_DAYS_AHEAD)
        unix_ms = to_unix_ms(slot)
        try:
            await thread_store.claim_slot(db, thread_id, slot, unix_ms, queued=True)
        except IntegrityError:
            await db.rollback()
            log.info("queue_slot_conflict", thread_id=str(thread_id), unix_ms=unix_ms, attempt=attempt)
            occupied = await thread_store.load_occupied_slots(db, account_id)
            occupied.add(unix_ms)
            continue
        return await _dispatch_and_commit(
            db,
            dispatcher,
            user_id=user_id,
            account_id=account_id,
            thread_id=thread_id,
            fire_at=slot,
            unix_ms=unix_ms,
            queued=True,
            post_count=len(posts),
        )
    raise SlotTaken("Could not reserve a queue slot, please try again")


async def unschedule_thread(db: AsyncSession, user: User, thread_id: UUID, dispatcher: Dispatcher) -> list[Post]:
    posts = await thread_store.get_thread(db, thread_id, user.id)
    if not any(p.is_scheduled and not p.is_published for p in posts):
        raise InvalidThread("Thread is not scheduled")
    await thread_store.cancel_pending_dispatches(dispatcher, posts)
    await thread_store.release_schedule(db, thread_id)
    await db.commit()
    log.info("thread_unscheduled", thread_id=str(thread_id))
    return await thread_store.get_thread(db, thread_id, user.id)


async def reschedule_thread(
    db: AsyncSession,
    user: User,
    thread_id: UUID,
    scheduled_at: datetime,
    dispatcher: Dispatcher,
    now: datetime | None = None,
) -> ScheduleOutcome:
    """Move a scheduled thread to a new instant (cancel, then schedule)."""
    now = _aware(now or _utcnow())
    fire_at = _aware(scheduled_at).astimezone(timezone.utc).replace(microsecond=0)
    if fire_at <= now:
        raise PastSchedule()
    posts = await thread_store.get_thread(db, thread_id, user.id)
    account = await _thread_account(db, user, posts)
    if all(p.is_published for p in posts):
        raise ThreadLocked("Thread has already been published")
    user_id, account_id = user.id, account.id
    old_ids = thread_store.pending_dispatch_ids(posts)

    unix_ms = to_unix_ms(fire_at)
    await _ensure_instant_free(db, account_id, thread_id, unix_ms)
    await thread_store.release_schedule(db, thread_id)
    try:
        await thread_store.claim_slot(db, thread_id, fire_at, unix_ms, queued=False)
    except IntegrityError:
        await db.rollback()
        raise SlotTaken()

    for extra in old_ids[1:]:
        await _cancel_quietly(dispatcher, extra)
    try:
        dispatch_id = await reschedule(
            dispatcher,
            old_ids[0] if old_ids else None,
            thread_id=thread_id,
            user_id=user_id,
            account_id=account_id,
            fire_at_unix=unix_ms // 1000,
        )
    except DispatchError:
        # The old dispatch may already be cancelled; fall back to draft.
        await db.rollback()
        await thread_store.release_schedule(db, thread_id)
        await db.commit()
        log.error("reschedule_failed", thread_id=str(thread_id))
        raise

    await thread_store.attach_dispatch(db, thread_id, dispatch_id)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        await _cancel_quietly(dispatcher, dispatch_id)
        raise SchedulerError("Problem with database") from exc
    log.info("thread_rescheduled", thread_id=str(thread_id), fire_at=fire_at.isoformat(), dispatch_id=dispatch_id)
    return ScheduleOutcome(thread_id, fire_at, unix_ms, dispatch_id, False, len(posts))


async def post_now(
    db: AsyncSession,
    user: User,
    account: Account,
    drafts: list[PostDraft],
    client_factory: Callable[[Account], TwitterClient] = TwitterClient.for_account,
) -> PublishResult:
    """Create a thread and publish it inline, bypassing the dispatcher."""
    require_credentials(account)
    thread_id = await thread_store.create_thread(db, user.id, account.id, drafts)
    await db.commit()
    return await publish_thread(db, thread_id, client_factory, user_id=user.id, account_id=account.id)


async def publish_existing_thread(
    db: AsyncSession,
    user: User,
    thread_id: UUID,
    dispatcher: Dispatcher,
    client_factory: Callable[[Account], TwitterClient] = TwitterClient.for_account,
) -> PublishResult:
    """Publish a stored thread right away, dropping any pending dispatch first."""
    posts = await thread_store.get_thread(db, thread_id, user.id)
    if all(p.is_published for p in posts):
        raise ThreadLocked("Thread has already been published")
    require_credentials(await resolve_account(db, posts, user.id, None))

    if thread_store.pending_dispatch_ids(posts):
        await thread_store.cancel_pending_dispatches(dispatcher, posts)
        await thread_store.release_schedule(db, thread_id)
        await db.commit()
    return await publish_thread(db, thread_id, client_factory, user_id=user.id)


async def clear_queue(db: AsyncSession, user: User, account: Account, dispatcher: Dispatcher) -> int:
    """Cancel and delete every scheduled, unpublished thread of the account."""
    firsts = [p for p in await thread_store.load_scheduled_threads(db, account.id) if p.user_id == user.id]
    for first in firsts:
        posts = await thread_store.get_thread(db, first.thread_id, user.id)
        await thread_store.cancel_pending_dispatches(dispatcher, posts)
        await thread_store.purge_thread(db, first.thread_id, unpublished_only=True)
    await db.commit()
    log.info("queue_cleared", account_id=str(account.id), threads=len(firsts))
    return len(firsts)


async def next_queue_slot(
    db: AsyncSession,
    user: User,
    account: Account,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> datetime | None:
    """Slot the next queued thread would get, without reserving it."""
    now = _aware(now or _utcnow())
    tz_name = _timezone_name(user, tz_name)
    prefs = preferences_for(user)
    window = prefs.window if settings.QUEUE_RESPECT_POSTING_WINDOW else None
    occupied = await thread_store.load_occupied_slots(db, account.id)
    return next_available_slot(
        now, tz_name, prefs.frequency, settings.QUEUE_MAX_DAYS_AHEAD, occupied_by(occupied), window
    )


async def queue_view(
    db: AsyncSession,
    user: User,
    account: Account,
    days: int = 7,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> QueueView:
    """Upcoming preset slots per local day with the thread holding each one.

    Threads scheduled at other instants appear as manual entries on their day.
    """
    now = _aware(now or _utcnow())
    tz_name = _timezone_name(user, tz_name)
    tz = ZoneInfo(tz_name)
    prefs = preferences_for(user)
    window = prefs.window if settings.QUEUE_RESPECT_POSTING_WINDOW else None
    scheduled = defaultdict(list)
    for post in await thread_store.load_scheduled_threads(db, account.id):
        scheduled[post.scheduled_unix].append(post)
    preset_unix = set()

    result_days = []
    for day, instants in daily_slots(now, tz_name, prefs.frequency, days, window):
        slots = []
        for instant in instants:
            unix_ms = to_unix_ms(instant)
            preset_unix.add(unix_ms)
            if instant <= now:
                continue
            holders = scheduled.get(unix_ms)
            if not holders:
                slots.append(QueueSlot(scheduled_for=instant, scheduled_unix=unix_ms))
                continue
            for post in holders:
                slots.append(
                    QueueSlot(
                        scheduled_for=instant,
                        scheduled_unix=unix_ms,
                        thread_id=post.thread_id,
                        preview=post.content[:80],
                        is_queued=post.is_queued,
                    )
                )
        result_days.append((day, slots))

    for unix_ms, holders in scheduled.items():
        if unix_ms in preset_unix:
            continue
        instant = datetime.fromtimestamp(unix_ms / 1000, tz=timezone.utc)
        local_day = instant.astimezone(tz).date()
        for day, slots in result_days:
            if day != local_day:
                continue
            for post in holders:
                slots.append(
                    QueueSlot(
                        scheduled_for=instant,
                        scheduled_unix=unix_ms,
                        thread_id=post.thread_id,
                        preview=post.content[:80],
                        is_queued=post.is_queued,
                        is_manual=True,
                    )
                )

    return QueueView(
        timezone=tz_name,
        frequency=prefs.frequency,
        days=[QueueDay(day=day, slots=sorted(slots, key=lambda s: s.scheduled_unix)) for day, slots in result_days],
    )


async def compose_drafts(request: ComposeRequest, cache: ContentCache | None = None) -> list[PostDraft]:
    """First post from resolved content plus any follow-up posts of the thread."""
    lookup = None
    if cache is not None and request.chat_id:
        chat_id = request.chat_id

        async def lookup():
            return await cache.get(chat_id)

    content = await resolve_content(request.content, lookup, request.conversation_context)
    if content is None and not request.media:
        raise MissingContent()

    drafts = [PostDraft(content=content or "", media=request.media)]
    for extra in request.additional_posts:
        if "delay_ms" not in extra.model_fields_set:
            extra = extra.model_copy(update={"delay_ms": DEFAULT_THREAD_DELAY_MS})
        drafts.append(extra)
    return drafts


async def _create_committed(db: AsyncSession, user: User, account: Account, drafts: list[PostDraft]) -> UUID:
    thread_id = await thread_store.create_thread(db, user.id, account.id, drafts)
    await db.commit()
    return thread_id


async def _discard(db: AsyncSession, thread_id: UUID) -> None:
    await db.rollback()
    await thread_store.purge_thread(db, thread_id)
    await db.commit()
    log.info("thread_discarded", thread_id=str(thread_id))


async def compose_post_now(
    db: AsyncSession,
    user: User,
    account: Account,
    request: ComposeRequest,
    cache: ContentCache | None = None,
    client_factory: Callable[[Account], TwitterClient] = TwitterClient.for_account,
) -> PublishResult:
    drafts = await compose_drafts(request, cache)
    return await post_now(db, user, account, drafts, client_factory)


async def compose_schedule(
    db: AsyncSession,
    user: User,
    account: Account,
    request: ComposeScheduleRequest,
    dispatcher: Dispatcher,
    cache: ContentCache | None = None,
    now: datetime | None = None,
) -> ScheduleOutcome:
    now = _aware(now or _utcnow())
    if _aware(request.scheduled_at) <= now:
        raise PastSchedule()
    require_credentials(account)
    drafts = await compose_drafts(request, cache)
    thread_id = await _create_committed(db, user, account, drafts)
    try:
        return await schedule_thread(db, user, thread_id, request.scheduled_at, dispatcher, now=now)
    except Exception:
        await _discard(db, thread_id)
        raise


async def compose_queue(
    db: AsyncSession,
    user: User,
    account: Account,
    request: ComposeQueueRequest,
    dispatcher: Dispatcher,
    cache: ContentCache | None = None,
    now: datetime | None = None,
) -> ScheduleOutcome:
    require_credentials(account)
    drafts = await compose_drafts(request, cache)
    thread_id = await _create_committed(db, user, account, drafts)
    try:
        return await queue_thread(db, user, thread_id, dispatcher, now=now, tz_name=request.timezone)
    except Exception:
        await _discard(db, thread_id)
        raise
