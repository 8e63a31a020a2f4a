"""Connected X account and its OAuth 1.0a user-context credentials."""
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid

from app.db.session import Base


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("user_id", "provider_id", "username", name="uq_accounts_user_provider_username"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_id = Column(String(30), nullable=False, default="twitter")
    username = Column(String(50), nullable=False)
    display_name = Column(String(100), nullable=True)
    access_token = Column(Text, nullable=True)
    access_secret = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_token and self.access_secret)
