"""API dependencies: auth, db session, dispatcher, repositories."""
from collections.abc import Callable
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import MissingCredentials
from app.core.security import decode_token
from app.db.session import get_db
from app.models.account import Account
from app.models.user import User
from app.services import account_service
from app.services.cache import ActiveAccountStore, ContentCache, RedisRepository, get_redis
from app.services.dispatcher import Dispatcher, get_dispatcher
from app.services.twitter_client import TwitterClient

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    payload = decode_token(credentials.credentials) if credentials else None
    sub = payload.get("sub") if payload and payload.get("type") == "access" else None
    user = None
    if sub:
        try:
            user_id = UUID(sub)
        except ValueError:
            user_id = None
        if user_id is not None:
            result = await db.execute(select(User).where(User.id == user_id))
            user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_key_value_repository() -> RedisRepository:
    return RedisRepository(get_redis())


def get_content_cache(repo: RedisRepository = Depends(get_key_value_repository)) -> ContentCache:
    return ContentCache(repo)


def get_account_store(repo: RedisRepository = Depends(get_key_value_repository)) -> ActiveAccountStore:
    return ActiveAccountStore(repo)


def get_scheduler_dispatcher() -> Dispatcher:
    return get_dispatcher()


def get_client_factory() -> Callable[[Account], TwitterClient]:
    return TwitterClient.for_account


async def get_active_account(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ActiveAccountStore = Depends(get_account_store),
) -> Account:
    account = await account_service.get_active_account(db, current_user.id, store)
    if account is None:
        raise MissingCredentials("No X account connected. Please connect one in settings.")
    return account
