"""Request schemas for conversational compose actions and the queue view."""
from datetime import date, datetime, timezone
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.schemas.post import MediaRef, PostDraft


class ComposeRequest(BaseModel):
    """A post (optionally continued as a thread) coming from the chat layer.

    ``content`` may be omitted; it is then resolved from the conversation's
    cached last post or from ``conversation_context``.
    """

    content: str | None = None
    media: list[MediaRef] = Field(default_factory=list)
    additional_posts: list[PostDraft] = Field(default_factory=list)
    chat_id: str | None = None
    conversation_context: str | None = None


class ComposeScheduleRequest(ComposeRequest):
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class ComposeQueueRequest(ComposeRequest):
    timezone: str | None = None


class CachedContent(BaseModel):
    content: str = Field(..., min_length=1)


class QueueSlot(BaseModel):
    scheduled_for: datetime
    scheduled_unix: int
    thread_id: UUID | None = None
    preview: str | None = None
    is_queued: bool = False
    is_manual: bool = False  # scheduled at a non-preset time


class QueueDay(BaseModel):
    day: date
    slots: list[QueueSlot]


class QueueView(BaseModel):
    timezone: str
    frequency: int
    days: list[QueueDay]


class NextSlotResponse(BaseModel):
    scheduled_for: datetime | None
    scheduled_unix: int | None
    timezone: str
