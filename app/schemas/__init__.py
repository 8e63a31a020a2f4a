from app.schemas.post import (
    PostDraft,
    PostEdit,
    PostResponse,
    ThreadCreate,
    ThreadResponse,
    ThreadUpdate,
)
from app.schemas.user import PostingSettings, PostingSettingsUpdate, AccountResponse
from app.schemas.compose import ComposeRequest, ComposeScheduleRequest, ComposeQueueRequest, QueueView
