"""Publish webhook called by the dispatcher at a thread's fire time."""
from collections.abc import Callable
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_client_factory, get_db
from app.core.config import settings
from app.core.errors import MissingCredentials
from app.core.security import verify_webhook_signature
from app.models.account import Account
from app.services.publisher import publish_thread
from app.services.twitter_client import TwitterClient

log = structlog.get_logger()

router = APIRouter(prefix="/tweet", tags=["webhooks"])


class PublishWebhookBody(BaseModel):
    thread_id: UUID = Field(alias="threadId")
    user_id: UUID = Field(alias="userId")
    account_id: UUID = Field(alias="accountId")


@router.post("/post-thread")
async def post_thread_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    client_factory: Callable[[Account], TwitterClient] = Depends(get_client_factory),
):
    raw = await request.body()
    signature = request.headers.get("upstash-signature")
    if not verify_webhook_signature(signature, raw, url=settings.webhook_endpoint):
        log.warning("webhook_signature_invalid")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid credentials")

    try:
        body = PublishWebhookBody.model_validate_json(raw)
    except PydanticValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook body")

    dispatch_id = request.headers.get("upstash-message-id")
    log.info("webhook_received", thread_id=str(body.thread_id), dispatch_id=dispatch_id)
    try:
        result = await publish_thread(
            db,
            body.thread_id,
            client_factory,
            user_id=body.user_id,
            account_id=body.account_id,
            dispatch_id=dispatch_id,
        )
    except MissingCredentials as exc:
        # Retrying cannot help until the user reconnects the account.
        return {"success": False, "message": exc.message}

    return {
        "success": True,
        "published": len(result.published),
        "rejected": len(result.rejected),
        "skipped": result.skipped,
    }
