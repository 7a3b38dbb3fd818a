"""Database model and Pydantic schemas for users and their calendar credentials."""

from __future__ import annotations

import datetime as dt
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Column, DateTime, String, Text

from yoyaku.database import Base
from yoyaku.security.identity import Role


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


class User(Base):
    """A signed-in person. Admins own availability blocks."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    email = Column(String(320), nullable=False, unique=True)
    name = Column(String(256), nullable=True)
    image = Column(String(2048), nullable=True)
    role = Column(String(16), nullable=False, default=Role.MEMBER.value)
    access_token = Column(Text, nullable=True)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    token_expiry = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"


class UserSummary(BaseModel):
    """Public view of a user nested inside blocks and reservations."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None

    @classmethod
    def from_row(cls, user: User) -> "UserSummary":
        return cls(id=user.id, name=user.name, email=user.email, image=user.image)


class StoredCredentials(BaseModel):
    """Decrypted OAuth material for one user."""

    user_id: str
    access_token: Optional[str] = None
    refresh_token: str
    expiry: Optional[dt.datetime] = None
