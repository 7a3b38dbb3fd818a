"""Reservations: booking, joining and cancelling, mirrored to Google Calendar."""

from yoyaku.modules.reservations.models import (
    ParticipantView,
    Reservation,
    ReservationParticipant,
    ReservationStatus,
    ReservationSummary,
    ReservationType,
    ReservationView,
)
from yoyaku.modules.reservations.service import ReservationService

__all__ = [
    "ParticipantView",
    "Reservation",
    "ReservationParticipant",
    "ReservationService",
    "ReservationStatus",
    "ReservationSummary",
    "ReservationType",
    "ReservationView",
]
