"""Thread persistence and the post-state writers used by scheduling and publishing."""
import uuid
from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import DispatchError, InvalidThread, ThreadLocked, ThreadNotFound
from app.models.post import Post
from app.schemas.post import PostDraft, PostEdit

log = structlog.get_logger()


def validate_drafts(drafts: list[PostDraft]) -> None:
    if not drafts:
        raise InvalidThread("A thread needs at least one post")
    for index, draft in enumerate(drafts):
        if not draft.content.strip() and not draft.media:
            raise InvalidThread(f"Post {index + 1} needs content or media")
        if len(draft.content) > settings.MAX_POST_LENGTH:
            raise InvalidThread(
                f"Post {index + 1} is {len(draft.content)} characters, limit is {settings.MAX_POST_LENGTH}"
            )


def _media_json(draft: PostDraft) -> list[dict]:
    return [m.model_dump() for m in draft.media]


async def create_thread(
    db: AsyncSession,
    user_id: UUID,
    account_id: UUID,
    drafts: list[PostDraft],
) -> UUID:
    """Insert all posts of a new draft thread; positions follow list order.

    Rows are only flushed; the caller commits (or rolls back) them together.
    """
    validate_drafts(drafts)
    thread_id = uuid.uuid4()
    for position, draft in enumerate(drafts):
        db.add(
            Post(
                thread_id=thread_id,
                user_id=user_id,
                account_id=account_id,
                content=draft.content,
                media=_media_json(draft),
                position=position,
                is_thread_start=position == 0,
                delay_ms=draft.delay_ms if position > 0 else 0,
            )
        )
    await db.flush()
    log.info("thread_created", thread_id=str(thread_id), account_id=str(account_id), post_count=len(drafts))
    return thread_id


async def get_thread(db: AsyncSession, thread_id: UUID, user_id: UUID | None = None) -> list[Post]:
    """All posts of a thread ordered by position; raises ThreadNotFound."""
    q = select(Post).where(Post.thread_id == thread_id)
    if user_id is not None:
        q = q.where(Post.user_id == user_id)
    result = await db.execute(q.order_by(Post.position).execution_options(populate_existing=True))
    posts = list(result.scalars().all())
    if not posts:
        raise ThreadNotFound(thread_id)
    return posts


async def list_threads(
    db: AsyncSession,
    user_id: UUID,
    account_id: UUID | None = None,
    skip: int = 0,
    limit: int = 50,
) -> list[tuple[Post, int]]:
    """Thread starts with their post counts, newest first."""
    counts = (
        select(Post.thread_id, func.count(Post.id).label("post_count"))
        .where(Post.user_id == user_id)
        .group_by(Post.thread_id)
        .subquery()
    )
    q = (
        select(Post, counts.c.post_count)
        .join(counts, counts.c.thread_id == Post.thread_id)
        .where(Post.user_id == user_id, Post.position == 0)
    )
    if account_id is not None:
        q = q.where(Post.account_id == account_id)
    q = q.order_by(Post.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(q)
    return [(post, count) for post, count in result.all()]


def ensure_editable(posts: list[Post]) -> None:
    if any(p.is_published for p in posts):
        raise ThreadLocked("Cannot change a thread that has already been published")
    if any(p.is_scheduled for p in posts):
        raise ThreadLocked("Thread is scheduled; unschedule it before editing")


async def update_thread(
    db: AsyncSession,
    thread_id: UUID,
    user_id: UUID,
    edits: list[PostEdit],
) -> list[Post]:
    """Rewrite a draft thread in place.

    Posts listed by id are updated, posts without an id are inserted and posts
    of the thread not listed are deleted. Positions are reassigned in list order.
    """
    posts = await get_thread(db, thread_id, user_id)
    ensure_editable(posts)
    validate_drafts(edits)

    existing = {p.id: p for p in posts}
    unknown = [e.id for e in edits if e.id is not None and e.id not in existing]
    if unknown:
        raise InvalidThread(f"Post {unknown[0]} does not belong to this thread")

    kept_ids = {e.id for e in edits if e.id is not None}
    for post in posts:
        if post.id not in kept_ids:
            await db.delete(post)

    first = posts[0]
    for position, edit in enumerate(edits):
        post = existing.get(edit.id) if edit.id is not None else None
        if post is None:
            post = Post(thread_id=thread_id, user_id=first.user_id, account_id=first.account_id)
            db.add(post)
        post.content = edit.content
        post.media = _media_json(edit)
        post.position = position
        post.is_thread_start = position == 0
        post.delay_ms = edit.delay_ms if position > 0 else 0
    await db.flush()
    log.info("thread_updated", thread_id=str(thread_id), post_count=len(edits))
    return await get_thread(db, thread_id, user_id)


def pending_dispatch_ids(posts: list[Post]) -> list[str]:
    """Distinct dispatch handles still attached to the thread, in position order."""
    seen = []
    for post in posts:
        if post.qstash_id and not post.is_published and post.qstash_id not in seen:
            seen.append(post.qstash_id)
    return seen


async def cancel_pending_dispatches(dispatcher, posts: list[Post]) -> None:
    """Best-effort cancel; an already-fired or failing cancel never blocks the caller."""
    for dispatch_id in pending_dispatch_ids(posts):
        try:
            cancelled = await dispatcher.cancel(dispatch_id)
        except DispatchError as exc:
            log.warning("dispatch_cancel_failed", dispatch_id=dispatch_id, error=exc.message)
            continue
        if not cancelled:
            log.info("dispatch_already_gone", dispatch_id=dispatch_id)


async def delete_thread(db: AsyncSession, thread_id: UUID, user_id: UUID, dispatcher) -> int:
    """Cancel any live dispatch, then delete every post of the thread."""
    posts = await get_thread(db, thread_id, user_id)
    await cancel_pending_dispatches(dispatcher, posts)
    await purge_thread(db, thread_id)
    log.info("thread_deleted", thread_id=str(thread_id), post_count=len(posts))
    return len(posts)


async def get_unpublished_posts(db: AsyncSession, thread_id: UUID) -> list[Post]:
    result = await db.execute(
        select(Post)
        .where(Post.thread_id == thread_id, Post.is_published.is_(False))
        .order_by(Post.position)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_post_at(db: AsyncSession, thread_id: UUID, position: int) -> Post | None:
    result = await db.execute(
        select(Post)
        .where(Post.thread_id == thread_id, Post.position == position)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_occupied_slots(db: AsyncSession, account_id: UUID, exclude_thread: UUID | None = None) -> set[int]:
    """Epoch-ms instants already taken by scheduled threads of the account."""
    q = select(Post.scheduled_unix).where(
        Post.account_id == account_id,
        Post.is_scheduled.is_(True),
        Post.scheduled_unix.is_not(None),
    )
    if exclude_thread is not None:
        q = q.where(Post.thread_id != exclude_thread)
    result = await db.execute(q)
    return {value for value in result.scalars().all()}


async def load_scheduled_threads(db: AsyncSession, account_id: UUID) -> list[Post]:
    """First pending post of every scheduled thread of the account, by fire time."""
    result = await db.execute(
        select(Post)
        .where(
            Post.account_id == account_id,
            Post.is_scheduled.is_(True),
            Post.is_published.is_(False),
        )
        .order_by(Post.scheduled_unix, Post.thread_id, Post.position)
        .execution_options(populate_existing=True)
    )
    firsts = {}
    for post in result.scalars().all():
        firsts.setdefault(post.thread_id, post)
    return list(firsts.values())


async def claim_slot(
    db: AsyncSession,
    thread_id: UUID,
    fire_at: datetime,
    unix_ms: int,
    queued: bool,
) -> None:
    """Mark the thread's unpublished posts scheduled at ``fire_at``.

    Raises sqlalchemy IntegrityError when another thread of the same account
    already holds the instant.
    """
    await db.execute(
        update(Post)
        .where(Post.thread_id == thread_id, Post.is_published.is_(False))
        .values(
            is_scheduled=True,
            is_queued=queued,
            scheduled_for=fire_at.astimezone(timezone.utc).replace(tzinfo=None),
            scheduled_unix=unix_ms,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


async def attach_dispatch(db: AsyncSession, thread_id: UUID, dispatch_id: str) -> None:
    await db.execute(
        update(Post)
        .where(Post.thread_id == thread_id, Post.is_published.is_(False))
        .values(qstash_id=dispatch_id)
        .execution_options(synchronize_session=False)
    )


async def release_schedule(db: AsyncSession, thread_id: UUID) -> None:
    """Return every unpublished post of the thread to draft state."""
    await db.execute(
        update(Post)
        .where(Post.thread_id == thread_id, Post.is_published.is_(False))
        .values(
            is_scheduled=False,
            is_queued=False,
            scheduled_for=None,
            scheduled_unix=None,
            qstash_id=None,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


async def purge_thread(db: AsyncSession, thread_id: UUID, unpublished_only: bool = False) -> None:
    """Delete rows without touching the dispatcher."""
    stmt = delete(Post).where(Post.thread_id == thread_id)
    if unpublished_only:
        stmt = stmt.where(Post.is_published.is_(False))
    await db.execute(stmt.execution_options(synchronize_session=False))
