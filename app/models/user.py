"""User model with posting preferences."""
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Uuid

from app.db.session import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    frequency = Column(Integer, nullable=True)  # posts per day; null means the default of 3
    posting_window_start = Column(Integer, nullable=True)  # local hour 0-23
    posting_window_end = Column(Integer, nullable=True)  # local hour 0-23, exclusive
    timezone = Column(String(64), nullable=False, default="UTC")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
