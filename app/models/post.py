"""Post model: one tweet-sized unit, grouped into threads by thread_id."""
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB

from app.db.session import Base

_SLOT_PREDICATE = "is_scheduled AND position = 0"


class Post(Base):
    __tablename__ = "posts"
    __table_args__ = (
        # One scheduled thread per account and instant; every post of a thread
        # shares scheduled_unix so only the thread start is indexed.
        Index(
            "uq_posts_account_slot",
            "account_id",
            "scheduled_unix",
            unique=True,
            postgresql_where=text(_SLOT_PREDICATE),
            sqlite_where=text(_SLOT_PREDICATE),
        ),
        Index("ix_posts_thread_position", "thread_id", "position"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    thread_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    media = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=list)  # [{"s3_key", "media_id"}]
    position = Column(Integer, nullable=False, default=0)
    is_thread_start = Column(Boolean, nullable=False, default=False)
    delay_ms = Column(Integer, nullable=False, default=0)

    is_scheduled = Column(Boolean, nullable=False, default=False)
    is_queued = Column(Boolean, nullable=False, default=False)
    is_published = Column(Boolean, nullable=False, default=False)
    scheduled_for = Column(DateTime, nullable=True)  # naive UTC
    scheduled_unix = Column(BigInteger, nullable=True)  # epoch milliseconds
    qstash_id = Column(String(255), nullable=True)  # pending dispatch handle

    twitter_id = Column(String(64), nullable=True)
    reply_to_tweet_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def media_ids(self) -> list[str]:
        return [m["media_id"] for m in (self.media or []) if isinstance(m.get("media_id"), str) and m["media_id"]]
