"""Availability blocks: admin-declared bookable windows mirrored from the calendar."""

from __future__ import annotations

import datetime as dt
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship

from yoyaku.clock import UtcDatetime
from yoyaku.database import Base
from yoyaku.modules.users.models import UserSummary


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


class AvailabilityBlock(Base):
    """One tagged remote event, 1:1, keyed by its remote event id."""

    __tablename__ = "availability_blocks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    admin_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    remote_event_id = Column(String(1024), nullable=True, unique=True)
    title = Column(String(1024), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    admin = relationship("User", lazy="selectin")

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="start_before_end"),
        Index("ix_availability_blocks_admin_start", "admin_id", "start_time"),
        Index("ix_availability_blocks_start", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<AvailabilityBlock(id={self.id}, admin={self.admin_id}, "
            f"start={self.start_time}, end={self.end_time})>"
        )


class BlockView(BaseModel):
    """A block as returned to callers."""

    id: str
    admin: Optional[UserSummary] = None
    title: Optional[str] = None
    start_time: UtcDatetime
    end_time: UtcDatetime

    @classmethod
    def from_row(cls, block: AvailabilityBlock) -> "BlockView":
        return cls(
            id=block.id,
            admin=UserSummary.from_row(block.admin) if block.admin else None,
            title=block.title,
            start_time=block.start_time,
            end_time=block.end_time,
        )


class SyncResult(BaseModel):
    """Outcome of one sync pass."""

    synced: int = 0
    removed: int = 0
