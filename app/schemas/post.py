"""Pydantic schemas for posts and threads."""
from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class MediaRef(BaseModel):
    s3_key: str
    media_id: str = ""  # empty until uploaded to the platform


class PostDraft(BaseModel):
    content: str = ""
    media: list[MediaRef] = Field(default_factory=list)
    delay_ms: int = Field(default=0, ge=0)


class PostEdit(PostDraft):
    id: UUID | None = None  # existing post to rewrite; None inserts a new one


class ThreadCreate(BaseModel):
    posts: list[PostDraft] = Field(..., min_length=1)


class ThreadUpdate(BaseModel):
    posts: list[PostEdit] = Field(..., min_length=1)


class PostResponse(BaseModel):
    id: UUID
    thread_id: UUID
    content: str
    media: list[MediaRef] = Field(default_factory=list)
    position: int
    is_thread_start: bool
    delay_ms: int = 0
    is_scheduled: bool = False
    is_queued: bool = False
    is_published: bool = False
    scheduled_for: datetime | None = None
    scheduled_unix: int | None = None
    twitter_id: str | None = None
    reply_to_tweet_id: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("scheduled_for")
    @classmethod
    def _mark_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ThreadResponse(BaseModel):
    thread_id: UUID
    account_id: UUID
    posts: list[PostResponse]
    is_scheduled: bool = False
    is_queued: bool = False
    is_published: bool = False
    scheduled_for: datetime | None = None


class ThreadSummary(BaseModel):
    thread_id: UUID
    preview: str
    post_count: int
    is_scheduled: bool = False
    is_queued: bool = False
    is_published: bool = False
    scheduled_for: datetime | None = None
    created_at: datetime | None = None


class ScheduleRequest(BaseModel):
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class QueueRequest(BaseModel):
    timezone: str | None = None  # overrides the user's saved timezone


class ScheduleResponse(BaseModel):
    success: bool = True
    thread_id: UUID
    scheduled_for: datetime
    scheduled_unix: int
    dispatch_id: str
    is_queued: bool
    post_count: int
    message: str


class PublishedPostResponse(BaseModel):
    post_id: UUID
    position: int
    twitter_id: str
    url: str


class RejectedPostResponse(BaseModel):
    post_id: UUID
    position: int
    reason: str


class PublishResponse(BaseModel):
    success: bool
    thread_id: UUID
    published: list[PublishedPostResponse] = Field(default_factory=list)
    rejected: list[RejectedPostResponse] = Field(default_factory=list)
    thread_url: str | None = None
    message: str
