"""Reservations and their participants."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from yoyaku.clock import UtcDatetime
from yoyaku.database import Base
from yoyaku.modules.availability.models import BlockView
from yoyaku.modules.users.models import UserSummary

_ONE_IDENTITY = (
    "(user_id IS NOT NULL AND guest_name IS NULL AND guest_email IS NULL)"
    " OR (user_id IS NULL AND guest_name IS NOT NULL)"
)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


class ReservationType(StrEnum):
    ONE_ON_ONE = "ONE_ON_ONE"
    GROUP = "GROUP"


class ReservationStatus(StrEnum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class Reservation(Base):
    """A booked time window. Keeps its own copy of the window and the admin id,
    so it stays meaningful after the originating block is removed."""

    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    block_id = Column(String(36), ForeignKey("availability_blocks.id", ondelete="SET NULL"), nullable=True)
    admin_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    type = Column(String(16), nullable=False, default=ReservationType.ONE_ON_ONE.value)
    title = Column(String(512), nullable=False)
    agenda = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=ReservationStatus.CONFIRMED.value)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    remote_event_id = Column(String(1024), nullable=True)
    creator_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    guest_name = Column(String(256), nullable=True)
    guest_email = Column(String(320), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    block = relationship("AvailabilityBlock", lazy="selectin")
    admin = relationship("User", foreign_keys=[admin_id], lazy="selectin")
    creator = relationship("User", foreign_keys=[creator_id], lazy="selectin")
    participants = relationship(
        "ReservationParticipant",
        back_populates="reservation",
        lazy="selectin",
        order_by="ReservationParticipant.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="start_before_end"),
        CheckConstraint(
            _ONE_IDENTITY.replace("user_id", "creator_id"),
            name="one_creator_identity",
        ),
        Index("ix_reservations_admin_window", "admin_id", "start_time", "end_time"),
        Index("ix_reservations_status_start", "status", "start_time"),
    )

    @property
    def is_confirmed(self) -> bool:
        return self.status == ReservationStatus.CONFIRMED.value

    def __repr__(self) -> str:
        return f"<Reservation(id={self.id}, type={self.type}, status={self.status}, start={self.start_time})>"


class ReservationParticipant(Base):
    """One attendee: a user, or a guest name with optional email."""

    __tablename__ = "reservation_participants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    reservation_id = Column(String(36), ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    guest_name = Column(String(256), nullable=True)
    guest_email = Column(String(320), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    reservation = relationship("Reservation", back_populates="participants")
    user = relationship("User", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("reservation_id", "user_id", name="uq_participant_user"),
        UniqueConstraint("reservation_id", "guest_email", name="uq_participant_guest_email"),
        CheckConstraint(_ONE_IDENTITY, name="one_identity"),
    )

    @property
    def email(self) -> Optional[str]:
        if self.user is not None:
            return self.user.email
        return self.guest_email

    @property
    def display_name(self) -> Optional[str]:
        if self.user is not None:
            return self.user.name
        return self.guest_name


# ── Views ────────────────────────────────────────────────────────────

class ParticipantView(BaseModel):
    """Participant identity as shown to callers."""

    id: str
    user: Optional[UserSummary] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None

    @classmethod
    def from_row(cls, participant: ReservationParticipant) -> "ParticipantView":
        return cls(
            id=participant.id,
            user=UserSummary.from_row(participant.user) if participant.user else None,
            guest_name=participant.guest_name,
            guest_email=participant.guest_email,
        )


class ReservationSummary(BaseModel):
    """Compact form attached to derived slots."""

    id: str
    type: ReservationType
    title: str
    participants: list[ParticipantView] = Field(default_factory=list)

    @classmethod
    def from_row(cls, reservation: Reservation) -> "ReservationSummary":
        return cls(
            id=reservation.id,
            type=ReservationType(reservation.type),
            title=reservation.title,
            participants=[ParticipantView.from_row(p) for p in reservation.participants],
        )


class ReservationView(BaseModel):
    """A reservation with block, admin, creator and participants nested."""

    id: str
    block_id: Optional[str] = None
    block: Optional[BlockView] = None
    admin: Optional[UserSummary] = None
    type: ReservationType
    title: str
    agenda: Optional[str] = None
    status: ReservationStatus
    start_time: UtcDatetime
    end_time: UtcDatetime
    remote_event_id: Optional[str] = None
    creator: Optional[UserSummary] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    participants: list[ParticipantView] = Field(default_factory=list)
    created_at: UtcDatetime
    updated_at: UtcDatetime

    @classmethod
    def from_row(cls, reservation: Reservation) -> "ReservationView":
        return cls(
            id=reservation.id,
            block_id=reservation.block_id,
            block=BlockView.from_row(reservation.block) if reservation.block else None,
            admin=UserSummary.from_row(reservation.admin) if reservation.admin else None,
            type=ReservationType(reservation.type),
            title=reservation.title,
            agenda=reservation.agenda,
            status=ReservationStatus(reservation.status),
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            remote_event_id=reservation.remote_event_id,
            creator=UserSummary.from_row(reservation.creator) if reservation.creator else None,
            guest_name=reservation.guest_name,
            guest_email=reservation.guest_email,
            participants=[ParticipantView.from_row(p) for p in reservation.participants],
            created_at=reservation.created_at,
            updated_at=reservation.updated_at,
        )
