"""Thread CRUD plus schedule, queue and publish actions on stored threads."""
from collections.abc import Callable
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_active_account,
    get_client_factory,
    get_current_user,
    get_db,
    get_scheduler_dispatcher,
)
from app.models.account import Account
from app.models.post import Post
from app.models.user import User
from app.schemas.post import (
    PostResponse,
    PublishedPostResponse,
    PublishResponse,
    QueueRequest,
    RejectedPostResponse,
    ScheduleRequest,
    ScheduleResponse,
    ThreadCreate,
    ThreadResponse,
    ThreadSummary,
    ThreadUpdate,
)
from app.services import scheduling_service, thread_store
from app.services.dispatcher import Dispatcher
from app.services.publisher import PublishResult
from app.services.scheduling_service import ScheduleOutcome
from app.services.twitter_client import TwitterClient

router = APIRouter(prefix="/threads", tags=["threads"])


def thread_to_response(posts: list[Post]) -> ThreadResponse:
    first = posts[0]
    pending = [p for p in posts if not p.is_published]
    head = pending[0] if pending else first
    return ThreadResponse(
        thread_id=first.thread_id,
        account_id=first.account_id,
        posts=[PostResponse.model_validate(p) for p in posts],
        is_scheduled=any(p.is_scheduled for p in pending),
        is_queued=any(p.is_queued for p in pending),
        is_published=all(p.is_published for p in posts),
        scheduled_for=PostResponse.model_validate(head).scheduled_for,
    )


def outcome_to_response(outcome: ScheduleOutcome) -> ScheduleResponse:
    when = outcome.fire_at.strftime("%Y-%m-%d %H:%M UTC")
    noun = "Thread" if outcome.post_count > 1 else "Post"
    verb = "queued" if outcome.queued else "scheduled"
    return ScheduleResponse(
        thread_id=outcome.thread_id,
        scheduled_for=outcome.fire_at,
        scheduled_unix=outcome.unix_ms,
        dispatch_id=outcome.dispatch_id,
        is_queued=outcome.queued,
        post_count=outcome.post_count,
        message=f"{noun} {verb} for {when}",
    )


def publish_to_response(result: PublishResult) -> PublishResponse:
    if result.skipped:
        message = f"Nothing published: {result.skipped}"
    elif result.rejected:
        message = f"Published {len(result.published)} post(s), {len(result.rejected)} rejected by X"
    else:
        message = "Posted successfully"
    return PublishResponse(
        success=result.success,
        thread_id=result.thread_id,
        published=[PublishedPostResponse(**vars(p)) for p in result.published],
        rejected=[RejectedPostResponse(**vars(r)) for r in result.rejected],
        thread_url=result.thread_url,
        message=message,
    )


@router.post("", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
async def create_thread(
    data: ThreadCreate,
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
):
    thread_id = await thread_store.create_thread(db, current_user.id, account.id, data.posts)
    await db.commit()
    return thread_to_response(await thread_store.get_thread(db, thread_id, current_user.id))


@router.get("", response_model=list[ThreadSummary])
async def list_threads(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
):
    rows = await thread_store.list_threads(db, current_user.id, account.id, skip=skip, limit=limit)
    summaries = []
    for first, count in rows:
        head = PostResponse.model_validate(first)
        summaries.append(
            ThreadSummary(
                thread_id=first.thread_id,
                preview=first.content[:120],
                post_count=count,
                is_scheduled=first.is_scheduled,
                is_queued=first.is_queued,
                is_published=first.is_published,
                scheduled_for=head.scheduled_for,
                created_at=first.created_at,
            )
        )
    return summaries


@router.get("/{thread_id}", response_model=ThreadResponse)
async def get_thread(
    thread_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return thread_to_response(await thread_store.get_thread(db, thread_id, current_user.id))


@router.put("/{thread_id}", response_model=ThreadResponse)
async def update_thread(
    thread_id: UUID,
    data: ThreadUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    posts = await thread_store.update_thread(db, thread_id, current_user.id, data.posts)
    await db.commit()
    return thread_to_response(posts)


@router.delete("/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_thread(
    thread_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    await thread_store.delete_thread(db, thread_id, current_user.id, dispatcher)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{thread_id}/schedule", response_model=ScheduleResponse)
async def schedule_thread(
    thread_id: UUID,
    data: ScheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    outcome = await scheduling_service.schedule_thread(db, current_user, thread_id, data.scheduled_at, dispatcher)
    return outcome_to_response(outcome)


@router.post("/{thread_id}/queue", response_model=ScheduleResponse)
async def queue_thread(
    thread_id: UUID,
    data: QueueRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    outcome = await scheduling_service.queue_thread(
        db, current_user, thread_id, dispatcher, tz_name=data.timezone if data else None
    )
    return outcome_to_response(outcome)


@router.post("/{thread_id}/reschedule", response_model=ScheduleResponse)
async def reschedule_thread(
    thread_id: UUID,
    data: ScheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    outcome = await scheduling_service.reschedule_thread(
        db, current_user, thread_id, data.scheduled_at, dispatcher
    )
    return outcome_to_response(outcome)


@router.post("/{thread_id}/unschedule", response_model=ThreadResponse)
async def unschedule_thread(
    thread_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    posts = await scheduling_service.unschedule_thread(db, current_user, thread_id, dispatcher)
    return thread_to_response(posts)


@router.post("/{thread_id}/publish", response_model=PublishResponse)
async def publish_thread(
    thread_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
    client_factory: Callable[[Account], TwitterClient] = Depends(get_client_factory),
):
    result = await scheduling_service.publish_existing_thread(db, current_user, thread_id, dispatcher, client_factory)
    return publish_to_response(result)
