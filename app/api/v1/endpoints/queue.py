"""Queue overview, next-slot preview and clearing."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_active_account, get_current_user, get_db, get_scheduler_dispatcher
from app.models.account import Account
from app.models.user import User
from app.schemas.compose import NextSlotResponse, QueueView
from app.services import scheduling_service
from app.services.dispatcher import Dispatcher
from app.services.slot_selector import to_unix_ms

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("", response_model=QueueView)
async def get_queue(
    days: int = Query(7, ge=1, le=31),
    timezone: str | None = Query(None),
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
):
    return await scheduling_service.queue_view(db, current_user, account, days=days, tz_name=timezone)


@router.get("/next-slot", response_model=NextSlotResponse)
async def get_next_slot(
    timezone: str | None = Query(None),
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
):
    slot = await scheduling_service.next_queue_slot(db, current_user, account, tz_name=timezone)
    return NextSlotResponse(
        scheduled_for=slot,
        scheduled_unix=to_unix_ms(slot) if slot else None,
        timezone=timezone or current_user.timezone or "UTC",
    )


@router.delete("")
async def clear_queue(
    current_user: User = Depends(get_current_user),
    account: Account = Depends(get_active_account),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_scheduler_dispatcher),
):
    removed = await scheduling_service.clear_queue(db, current_user, account, dispatcher)
    return {"success": True, "threads_removed": removed}
