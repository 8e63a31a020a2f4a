"""Conversational compose actions: post now, schedule or queue a fresh post.

Content may be omitted; it is then looked up in the conversation cache and
the conversation text sent along with the request.
"""
from collections.abc import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_active_account,
    get_client_factory,
    get_content_cache,
    get_current_user,
    get_db,
    get_scheduler_dispatcher,
)
from app.api.v1.endpoints.threads import outcome_to_response, publish_to_response
from app.models.account import Account
from app.models.user import User
from app.schemas.compose import CachedContent, ComposeQueueRequest, ComposeRequest, ComposeScheduleRequest
from app.schemas.post import PublishResponse, ScheduleResponse
from app.services import scheduling_service
from app.services.cache import ContentCache
from app.services.dispatcher import Dispatcher
from app.services.twitter_client import TwitterClient

router = APIRouter(prefix="/compose", tags=["compose"])


@router.post("/post-now", response_model=PublishResponse)
async def post_now(
    data: ComposeRequest,
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
    cache: ContentCache = Depends(get_content_cache),
    client_factory: Callable[[Account], TwitterClient] = Depends(get_client_factory),
):
    result = await scheduling_service.compose_post_now(db, current_user, account, data, cache, client_factory)
    return publish_to_response(result)


@router.post("/schedule", response_model=ScheduleResponse)
async def schedule(
    data: ComposeScheduleRequest,
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
    cache: ContentCache = Depends(get_content_cache),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    outcome = await scheduling_service.compose_schedule(db, current_user, account, data, dispatcher, cache)
    return outcome_to_response(outcome)


@router.post("/queue", response_model=ScheduleResponse)
async def queue(
    data: ComposeQueueRequest,
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
    cache: ContentCache = Depends(get_content_cache),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    outcome = await scheduling_service.compose_queue(db, current_user, account, data, dispatcher, cache)
    return outcome_to_response(outcome)


@router.put("/conversations/{chat_id}/last-post")
async def remember_last_post(
    chat_id: str,
    data: CachedContent,
    current_user: User = Depends(get_current_user),
    cache: ContentCache = Depends(get_content_cache),
):
    """Store the latest drafted post of a conversation for a later "post it"."""
    await cache.set(chat_id, data.content)
    return {"success": True}
