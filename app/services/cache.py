"""Key/value repositories backed by Redis.

Operations receive these as dependencies; nothing here keeps module-level
mutable state besides the shared connection pool.
"""
from typing import Protocol
from uuid import UUID

import redis.asyncio as redis

from app.core.config import settings


class KeyValueRepository(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ...


class RedisRepository:
    def __init__(self, client: redis.Redis):
        self.client = client

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds)


class ContentCache:
    """Last post text produced in a conversation, kept for a short while."""

    def __init__(self, repo: KeyValueRepository, ttl_seconds: int | None = None):
        self.repo = repo
        self.ttl_seconds = ttl_seconds or settings.CONTENT_CACHE_TTL_SECONDS

    @staticmethod
    def key(chat_id: str) -> str:
        return f"chat:last-post:{chat_id}"

    async def get(self, chat_id: str) -> str | None:
        return await self.repo.get(self.key(chat_id))

    async def set(self, chat_id: str, content: str) -> None:
        await self.repo.set(self.key(chat_id), content, ttl_seconds=self.ttl_seconds)


class ActiveAccountStore:
    """Which connected account a user is currently working with."""

    def __init__(self, repo: KeyValueRepository):
        self.repo = repo

    @staticmethod
    def key(user_id: UUID) -> str:
        return f"active-account:{user_id}"

    async def get(self, user_id: UUID) -> UUID | None:
        value = await self.repo.get(self.key(user_id))
        if not value:
            return None
        try:
            return UUID(value)
        except ValueError:
            return None

    async def set(self, user_id: UUID, account_id: UUID) -> None:
        await self.repo.set(self.key(user_id), str(account_id))


_redis: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis
