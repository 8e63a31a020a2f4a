"""Connected-account lookup."""
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AccountNotFound, MissingCredentials
from app.models.account import Account
from app.services.cache import ActiveAccountStore


async def list_accounts(db: AsyncSession, user_id: UUID) -> list[Account]:
    result = await db.execute(
        select(Account).where(Account.user_id == user_id).order_by(Account.created_at, Account.username)
    )
    return list(result.scalars().all())


async def get_account(db: AsyncSession, user_id: UUID, account_id: UUID) -> Account | None:
    result = await db.execute(select(Account).where(Account.id == account_id, Account.user_id == user_id))
    return result.scalar_one_or_none()


async def get_active_account(db: AsyncSession, user_id: UUID, store: ActiveAccountStore) -> Account | None:
    """The account chosen by the user, else their first connected X account."""
    active_id = await store.get(user_id)
    if active_id is not None:
        account = await get_account(db, user_id, active_id)
        if account is not None:
            return account
    result = await db.execute(
        select(Account)
        .where(Account.user_id == user_id, Account.provider_id == "twitter")
        .order_by(Account.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def set_active_account(db: AsyncSession, user_id: UUID, account_id: UUID, store: ActiveAccountStore) -> Account:
    account = await get_account(db, user_id, account_id)
    if account is None:
        raise AccountNotFound()
    await store.set(user_id, account.id)
    return account


def require_credentials(account: Account | None) -> Account:
    if account is None or not account.has_credentials:
        raise MissingCredentials()
    return account
