"""Posting preferences and connected accounts."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_account_store, get_current_user, get_db
from app.models.user import User
from app.schemas.user import AccountResponse, ActiveAccountUpdate, PostingSettings, PostingSettingsUpdate
from app.services import account_service, settings_service
from app.services.cache import ActiveAccountStore

router = APIRouter(tags=["settings"])


@router.get("/settings", response_model=PostingSettings)
async def get_settings(current_user: User = Depends(get_current_user)):
    return PostingSettings(**vars(settings_service.preferences_for(current_user)))


@router.patch("/settings", response_model=PostingSettings)
async def update_settings(
    data: PostingSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    prefs = await settings_service.update_preferences(db, current_user, data)
    await db.commit()
    return PostingSettings(**vars(prefs))


@router.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ActiveAccountStore = Depends(get_account_store),
):
    accounts = await account_service.list_accounts(db, current_user.id)
    active = await account_service.get_active_account(db, current_user.id, store)
    return [
        AccountResponse(
            id=a.id,
            provider_id=a.provider_id,
            username=a.username,
            display_name=a.display_name,
            has_credentials=a.has_credentials,
            is_active=active is not None and a.id == active.id,
        )
        for a in accounts
    ]


@router.put("/accounts/active", response_model=AccountResponse)
async def set_active_account(
    data: ActiveAccountUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ActiveAccountStore = Depends(get_account_store),
):
    account = await account_service.set_active_account(db, current_user.id, data.account_id, store)
    return AccountResponse(
        id=account.id,
        provider_id=account.provider_id,
        username=account.username,
        display_name=account.display_name,
        has_credentials=account.has_credentials,
        is_active=True,
    )
