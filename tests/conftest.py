"""Shared fixtures for the scheduler test suite."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_JSON", "false")

import itertools
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.errors import DispatchError
from app.db.base import Base
from app.models.account import Account
from app.models.user import User
from app.schemas.post import PostDraft
from app.services import thread_store


# ---------------------------------------------------------------------------
# Keep tests away from real services
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    for key in ("QSTASH_TOKEN", "TWITTER_CONSUMER_KEY", "TWITTER_CONSUMER_SECRET", "WEBHOOK_URL"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def fixed_now():
    """2024-01-01 09:00 UTC, a Monday morning before the first preset slot."""
    return datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def user(db):
    user = User(email="alice@example.com", name="Alice", frequency=2, timezone="UTC")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def account(db, user):
    account = Account(
        user_id=user.id,
        provider_id="twitter",
        username="alice",
        access_token="token",
        access_secret="secret",
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
def make_thread(db, user, account):
    """Create and commit a draft thread from plain strings."""

    async def _make(*contents: str, delay_ms: int = 0):
        drafts = [PostDraft(content=c, delay_ms=delay_ms) for c in contents]
        thread_id = await thread_store.create_thread(db, user.id, account.id, drafts)
        await db.commit()
        return thread_id

    return _make


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeDispatcher:
    def __init__(self):
        self.scheduled = []
        self.cancelled = []
        self.fail_schedule = False
        self.cancel_result = True
        self.cancel_error = False
        self._ids = itertools.count(1)

    async def schedule(self, *, thread_id, user_id, account_id, fire_at_unix):
        if self.fail_schedule:
            raise DispatchError("queue unavailable")
        dispatch_id = f"msg_{next(self._ids)}"
        self.scheduled.append(
            {
                "thread_id": thread_id,
                "user_id": user_id,
                "account_id": account_id,
                "fire_at_unix": fire_at_unix,
                "dispatch_id": dispatch_id,
            }
        )
        return dispatch_id

    async def cancel(self, dispatch_id):
        self.cancelled.append(dispatch_id)
        if self.cancel_error:
            raise DispatchError("cancel failed")
        return self.cancel_result


class FakeTwitterClient:
    """Records posted tweets; ``failures`` maps call index to an exception."""

    def __init__(self, username="alice", failures=None, start_id=1000):
        self.username = username
        self.failures = dict(failures or {})
        self.calls = []
        self._ids = itertools.count(start_id)

    async def post_tweet(self, text, reply_to=None, media_ids=None):
        index = len(self.calls)
        self.calls.append({"text": text, "reply_to": reply_to, "media_ids": media_ids})
        if index in self.failures:
            raise self.failures[index]
        return str(next(self._ids))


class MemoryRepository:
    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ttl_seconds=None):
        self.data[key] = value


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def twitter():
    return FakeTwitterClient()


@pytest.fixture
def client_factory(twitter):
    return lambda account: twitter


@pytest.fixture
def memory_repo():
    return MemoryRepository()
