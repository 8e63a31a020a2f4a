"""Pydantic schemas for posting settings and connected accounts."""
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


class PostingSettings(BaseModel):
    frequency: int
    posting_window_start: int
    posting_window_end: int
    timezone: str


class PostingSettingsUpdate(BaseModel):
    frequency: int | None = Field(None, ge=1, le=10)
    posting_window_start: int | None = Field(None, ge=0, le=23)
    posting_window_end: int | None = Field(None, ge=0, le=23)
    timezone: str | None = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value


class AccountResponse(BaseModel):
    id: UUID
    provider_id: str
    username: str
    display_name: str | None = None
    has_credentials: bool = False
    is_active: bool = False

    model_config = {"from_attributes": True}


class ActiveAccountUpdate(BaseModel):
    account_id: UUID
