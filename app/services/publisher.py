"""Thread publishing.

``publish_thread`` drains a thread's unpublished posts in position order and
posts each one as a reply to the previous. It is safe to run any number of
times for the same thread: every run starts from the posts that are still
unpublished, so a duplicate dispatch or a manual retry only picks up what is
left.

Per-post outcomes:

- posted: the post is marked published and becomes the reply target
- ContentRejected: the post goes back to draft and the run continues; the
  next post is not attached to the reply chain
- anything else: the error propagates and the remaining posts keep their state
"""
import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ContentRejected, MissingCredentials
from app.models.account import Account
from app.models.post import Post
from app.services import thread_store
from app.services.twitter_client import TwitterClient, post_url

log = structlog.get_logger()


@dataclass
class PublishedPost:
    post_id: UUID
    position: int
    twitter_id: str
    url: str


@dataclass
class RejectedPost:
    post_id: UUID
    position: int
    reason: str


@dataclass
class PublishResult:
    thread_id: UUID
    published: list[PublishedPost] = field(default_factory=list)
    rejected: list[RejectedPost] = field(default_factory=list)
    skipped: str | None = None  # why nothing was attempted

    @property
    def thread_url(self) -> str | None:
        return self.published[0].url if self.published else None

    @property
    def success(self) -> bool:
        return bool(self.published) and not self.rejected


async def resolve_account(
    db: AsyncSession,
    posts: list[Post],
    user_id: UUID | None,
    account_id: UUID | None,
) -> Account | None:
    q = select(Account).where(Account.id == (account_id or posts[0].account_id))
    if user_id is not None:
        q = q.where(Account.user_id == user_id)
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def _reply_seed(db: AsyncSession, thread_id: UUID, first: Post) -> str | None:
    """External id of the published predecessor when resuming mid-thread."""
    if first.position == 0:
        return None
    previous = await thread_store.get_post_at(db, thread_id, first.position - 1)
    if previous is not None and previous.is_published:
        return previous.twitter_id
    return None


async def publish_thread(
    db: AsyncSession,
    thread_id: UUID,
    client_factory: Callable[[Account], TwitterClient] = TwitterClient.for_account,
    *,
    user_id: UUID | None = None,
    account_id: UUID | None = None,
    dispatch_id: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PublishResult:
    result = PublishResult(thread_id=thread_id)
    posts = await thread_store.get_unpublished_posts(db, thread_id)
    if not posts:
        log.info("publish_nothing_pending", thread_id=str(thread_id))
        result.skipped = "nothing to publish"
        return result

    if dispatch_id is not None and not any(p.qstash_id == dispatch_id for p in posts):
        log.info("publish_stale_dispatch", thread_id=str(thread_id), dispatch_id=dispatch_id)
        result.skipped = "stale dispatch"
        return result

    account = await resolve_account(db, posts, user_id, account_id)
    if account is None or not account.has_credentials:
        log.error("publish_missing_credentials", thread_id=str(thread_id), account_id=str(account_id or posts[0].account_id))
        raise MissingCredentials()

    client = client_factory(account)
    previous_id = await _reply_seed(db, thread_id, posts[0])
    log.info("publish_started", thread_id=str(thread_id), pending=len(posts), resume_from=posts[0].position)

    for post in posts:
        if post.position > 0 and post.delay_ms:
            await sleep(post.delay_ms / 1000)

        try:
            tweet_id = await client.post_tweet(post.content, reply_to=previous_id, media_ids=post.media_ids or None)
        except ContentRejected as exc:
            post.is_scheduled = False
            post.is_queued = False
            post.is_published = False
            post.scheduled_for = None
            post.scheduled_unix = None
            post.qstash_id = None
            post.updated_at = datetime.utcnow()
            await db.commit()
            log.warning(
                "publish_post_rejected",
                thread_id=str(thread_id),
                post_id=str(post.id),
                position=post.position,
                reason=exc.message,
            )
            result.rejected.append(RejectedPost(post.id, post.position, exc.message))
            previous_id = None
            continue
        except Exception:
            log.exception("publish_aborted", thread_id=str(thread_id), post_id=str(post.id), position=post.position)
            raise

        post.twitter_id = tweet_id
        post.reply_to_tweet_id = previous_id
        post.is_published = True
        post.is_scheduled = False
        post.is_queued = False
        post.qstash_id = None
        post.updated_at = datetime.utcnow()
        await db.commit()

        url = post_url(account.username, tweet_id)
        result.published.append(PublishedPost(post.id, post.position, tweet_id, url))
        log.info("publish_post_sent", thread_id=str(thread_id), position=post.position, twitter_id=tweet_id)
        previous_id = tweet_id

    log.info(
        "publish_finished",
        thread_id=str(thread_id),
        published=len(result.published),
        rejected=len(result.rejected),
    )
    return result
