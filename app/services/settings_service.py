"""Per-user posting preferences consumed by the queue."""
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ValidationError
from app.models.user import User
from app.schemas.user import PostingSettingsUpdate


@dataclass(frozen=True)
class PostingPreferences:
    frequency: int
    posting_window_start: int
    posting_window_end: int
    timezone: str

    @property
    def window(self) -> tuple[int, int]:
        return (self.posting_window_start, self.posting_window_end)


def preferences_for(user: User) -> PostingPreferences:
    return PostingPreferences(
        frequency=user.frequency or settings.DEFAULT_FREQUENCY,
        posting_window_start=(
            user.posting_window_start
            if user.posting_window_start is not None
            else settings.DEFAULT_POSTING_WINDOW_START
        ),
        posting_window_end=(
            user.posting_window_end if user.posting_window_end is not None else settings.DEFAULT_POSTING_WINDOW_END
        ),
        timezone=user.timezone or "UTC",
    )


async def update_preferences(db: AsyncSession, user: User, data: PostingSettingsUpdate) -> PostingPreferences:
    current = preferences_for(user)
    start = data.posting_window_start if data.posting_window_start is not None else current.posting_window_start
    end = data.posting_window_end if data.posting_window_end is not None else current.posting_window_end
    if start >= end:
        raise ValidationError("Posting window start time must be before end time")

    if data.frequency is not None:
        user.frequency = data.frequency
    user.posting_window_start = start
    user.posting_window_end = end
    if data.timezone is not None:
        user.timezone = data.timezone
    await db.flush()
    return preferences_for(user)
