"""Reservation lifecycle: create, join, cancel, plus the calendar mirroring around them.

Local state is always committed first. Mirroring a reservation onto the admin's
(and the member's) Google Calendar is handed to the side-effect dispatcher
afterwards, so a calendar outage never changes the outcome of a booking.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from yoyaku.clock import Clock, SystemClock, to_naive_utc
from yoyaku.config import Settings, get_settings
from yoyaku.database import get_session_factory, session_scope
from yoyaku.errors import (
    AlreadyJoined,
    Forbidden,
    InvalidState,
    NotFound,
    TypeNotJoinable,
    Unauthorized,
    ValidationError,
)
from yoyaku.logging_config import get_logger
from yoyaku.modules.availability.models import AvailabilityBlock
from yoyaku.modules.calendar.models import EventDraft, EventPatch
from yoyaku.modules.calendar.providers import CalendarGateway
from yoyaku.modules.reservations.models import (
    Reservation,
    ReservationParticipant,
    ReservationStatus,
    ReservationType,
)
from yoyaku.modules.task_queue.service import SideEffectDispatcher
from yoyaku.modules.users.models import User
from yoyaku.security.identity import (
    DEFAULT_ADMIN_NAME,
    DEFAULT_MEMBER_NAME,
    AuthenticatedUser,
    Guest,
    Identity,
    require_identity,
    require_user,
)

logger = get_logger(__name__)

SCOPE_MINE = "mine"
SCOPE_ALL = "all"


def default_title(type: ReservationType, requester_name: str) -> str:
    """Title used when the requester gives none."""
    if type == ReservationType.GROUP:
        return f"{requester_name}のフィードバック会"
    return f"{requester_name}との1on1"


def _agenda_description(agenda: Optional[str]) -> Optional[str]:
    return f"議題: {agenda}" if agenda else None


_PARTICIPANT_UNIQUES = ("uq_participant_user", "uq_participant_guest_email")
_PARTICIPANT_UNIQUE_COLUMNS = ("reservation_participants.user_id", "reservation_participants.guest_email")


def is_duplicate_participant(exc: IntegrityError) -> bool:
    """True when ``exc`` violates one of the participant uniqueness constraints."""
    message = str(exc.orig)
    if any(name in message for name in _PARTICIPANT_UNIQUES):
        return True
    # SQLite reports the columns instead of the constraint name
    return "UNIQUE" in message and any(column in message for column in _PARTICIPANT_UNIQUE_COLUMNS)


def _is_same_identity(participant: ReservationParticipant, identity: Identity) -> bool:
    if isinstance(identity, AuthenticatedUser):
        return participant.user_id == identity.user_id
    # A guest without an email cannot be told apart from another guest
    return bool(identity.email) and participant.user_id is None and participant.guest_email == identity.email


class ReservationService:
    """Creates, joins and cancels reservations against availability blocks."""

    def __init__(
        self,
        gateway: CalendarGateway,
        dispatcher: SideEffectDispatcher,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._session_factory = session_factory or get_session_factory()
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()

    # ── Queries ──────────────────────────────────────────────────────

    async def get(self, reservation_id: str) -> Reservation:
        """Load a reservation with block, admin, creator and participants.

        Raises:
            NotFound: if there is no such reservation.
        """
        async with session_scope(self._session_factory) as session:
            reservation = await session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound("Reservation not found")
        return reservation

    async def list_reservations(self, requester: Optional[Identity], scope: str = SCOPE_MINE) -> list[Reservation]:
        """Confirmed reservations the requester created or takes part in.

        ``scope="all"`` lists every confirmed reservation for admins; for
        anyone else it falls back to their own.
        """
        user = require_user(requester)
        stmt = select(Reservation).where(Reservation.status == ReservationStatus.CONFIRMED.value)
        if not (scope == SCOPE_ALL and user.is_admin):
            stmt = stmt.where(or_(
                Reservation.creator_id == user.user_id,
                Reservation.participants.any(ReservationParticipant.user_id == user.user_id),
            ))
        stmt = stmt.order_by(Reservation.start_time, Reservation.created_at)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ── Lifecycle ────────────────────────────────────────────────────

    async def create(
        self,
        block_id: str,
        start_time: dt.datetime,
        end_time: dt.datetime,
        type: ReservationType,
        identity: Optional[Identity],
        title: Optional[str] = None,
        agenda: Optional[str] = None,
    ) -> Reservation:
        """Book a window on a block. The requester becomes the first participant.

        Raises:
            Unauthorized: no usable identity under the current booking policy.
            ValidationError: malformed guest identity or an empty window.
            NotFound: the block does not exist.
        """
        identity = require_identity(identity, self._settings.allow_guest_booking)
        start_time = to_naive_utc(start_time)
        end_time = to_naive_utc(end_time)
        if start_time >= end_time:
            raise ValidationError("Invalid time window", fields={"end_time": "Must be after start_time"})
        title = (title or "").strip() or None
        agenda = (agenda or "").strip() or None

        async with session_scope(self._session_factory) as session:
            block = await session.get(AvailabilityBlock, block_id)
            if block is None:
                raise NotFound("Block not found")

            reservation = Reservation(
                block_id=block.id,
                admin_id=block.admin_id,
                type=type.value,
                agenda=agenda,
                status=ReservationStatus.CONFIRMED.value,
                start_time=start_time,
                end_time=end_time,
            )
            if isinstance(identity, AuthenticatedUser):
                user = await session.get(User, identity.user_id)
                if user is None:
                    raise Unauthorized("Unknown user")
                requester_name = user.name or DEFAULT_MEMBER_NAME
                requester_email = user.email
                reservation.creator_id = user.id
                reservation.participants.append(ReservationParticipant(user_id=user.id))
            else:
                requester_name = identity.name
                requester_email = identity.email
                reservation.guest_name = identity.name
                reservation.guest_email = identity.email
                reservation.participants.append(
                    ReservationParticipant(guest_name=identity.name, guest_email=identity.email)
                )
            reservation.title = title or default_title(type, requester_name)

            session.add(reservation)
            await session.flush()
            reservation_id = reservation.id
            admin_id = block.admin_id
            admin = block.admin
            admin_name = (admin.name if admin else None) or DEFAULT_ADMIN_NAME
            admin_email = admin.email if admin else None

        logger.info(
            "reservation_created",
            reservation_id=reservation_id,
            block_id=block_id,
            type=type.value,
            requester=identity.kind,
        )

        description = _agenda_description(agenda)
        self._dispatcher.submit(
            "mirror_to_admin",
            self._mirror_to_admin(reservation_id, admin_id, EventDraft(
                summary=f"【予約】{requester_name}との面談",
                description=description,
                start=start_time,
                end=end_time,
                attendee_emails=[requester_email] if requester_email else [],
            )),
            reservation_id=reservation_id,
        )
        if isinstance(identity, AuthenticatedUser):
            self._dispatcher.submit(
                "mirror_to_member",
                self._gateway.create_event(identity.user_id, EventDraft(
                    summary=f"【予約】{admin_name}との面談",
                    description=description,
                    start=start_time,
                    end=end_time,
                    attendee_emails=[admin_email] if admin_email else [],
                )),
                reservation_id=reservation_id,
                user_id=identity.user_id,
            )

        return await self.get(reservation_id)

    async def join(self, reservation_id: str, identity: Optional[Identity]) -> ReservationParticipant:
        """Add the caller to a group reservation.

        Raises:
            NotFound: no such reservation.
            InvalidState: the reservation is cancelled.
            TypeNotJoinable: the reservation is a 1on1.
            AlreadyJoined: the caller already participates.
        """
        identity = require_identity(identity, self._settings.allow_guest_booking)

        try:
            async with session_scope(self._session_factory) as session:
                reservation = await session.get(Reservation, reservation_id)
                if reservation is None:
                    raise NotFound("Reservation not found")
                if not reservation.is_confirmed:
                    raise InvalidState("Reservation is not available")
                if reservation.type != ReservationType.GROUP.value:
                    raise TypeNotJoinable("この予約は1on1のため参加できません")
                if any(_is_same_identity(p, identity) for p in reservation.participants):
                    raise AlreadyJoined("Already a participant")

                emails = [p.email for p in reservation.participants if p.email]
                if isinstance(identity, AuthenticatedUser):
                    user = await session.get(User, identity.user_id)
                    if user is None:
                        raise Unauthorized("Unknown user")
                    participant = ReservationParticipant(reservation_id=reservation.id, user_id=user.id)
                    joiner_email = user.email
                else:
                    participant = ReservationParticipant(
                        reservation_id=reservation.id,
                        guest_name=identity.name,
                        guest_email=identity.email,
                    )
                    joiner_email = identity.email
                session.add(participant)
                await session.flush()

                if joiner_email and joiner_email not in emails:
                    emails.append(joiner_email)
                admin_id = reservation.admin_id
                admin = reservation.admin
                remote_event_id = reservation.remote_event_id
                start_time, end_time = reservation.start_time, reservation.end_time
                agenda = reservation.agenda
        except IntegrityError as exc:
            if not is_duplicate_participant(exc):
                raise
            # A concurrent join with the same identity won the race
            logger.info("reservation_join_conflict", reservation_id=reservation_id)
            raise AlreadyJoined("Already a participant") from exc

        logger.info("reservation_joined", reservation_id=reservation_id, participant=identity.kind)

        if remote_event_id:
            self._dispatcher.submit(
                "update_admin_attendees",
                self._gateway.update_event(admin_id, remote_event_id, EventPatch(attendee_emails=emails)),
                reservation_id=reservation_id,
            )
        if isinstance(identity, AuthenticatedUser):
            admin_name = (admin.name if admin else None) or DEFAULT_ADMIN_NAME
            self._dispatcher.submit(
                "mirror_to_member",
                self._gateway.create_event(identity.user_id, EventDraft(
                    summary=f"【フィードバック会】{admin_name}",
                    description=_agenda_description(agenda),
                    start=start_time,
                    end=end_time,
                    attendee_emails=[admin.email] if admin and admin.email else [],
                )),
                reservation_id=reservation_id,
                user_id=identity.user_id,
            )

        return participant

    async def cancel(self, reservation_id: str, requester: Optional[Identity]) -> Reservation:
        """Cancel a reservation. Cancelling twice is allowed.

        Raises:
            NotFound: no such reservation.
            Forbidden: the requester is not the creator, the admin or a participant.
        """
        requester = require_identity(requester, self._settings.allow_guest_booking)

        async with session_scope(self._session_factory) as session:
            reservation = await session.get(Reservation, reservation_id)
            if reservation is None:
                raise NotFound("Reservation not found")
            if not self._may_cancel(reservation, requester):
                logger.warning("reservation_cancel_forbidden", reservation_id=reservation_id, requester=requester.kind)
                raise Forbidden("Not allowed to cancel this reservation")

            was_confirmed = reservation.is_confirmed
            reservation.status = ReservationStatus.CANCELLED.value
            admin_id = reservation.admin_id
            remote_event_id = reservation.remote_event_id

        logger.info("reservation_cancelled", reservation_id=reservation_id, already_cancelled=not was_confirmed)

        if remote_event_id:
            self._dispatcher.submit(
                "remove_admin_mirror",
                self._remove_mirror(reservation_id, admin_id, remote_event_id),
                reservation_id=reservation_id,
            )
        return reservation

    @staticmethod
    def _may_cancel(reservation: Reservation, requester: Identity) -> bool:
        if isinstance(requester, AuthenticatedUser):
            if requester.user_id in (reservation.creator_id, reservation.admin_id):
                return True
        elif isinstance(requester, Guest) and requester.email and reservation.guest_email == requester.email:
            return True
        return any(_is_same_identity(p, requester) for p in reservation.participants)

    # ── Calendar mirroring ───────────────────────────────────────────

    async def _mirror_to_admin(self, reservation_id: str, admin_id: str, draft: EventDraft) -> None:
        remote_event_id = await self._gateway.create_event(admin_id, draft)

        async with session_scope(self._session_factory) as session:
            reservation = await session.get(Reservation, reservation_id)
            still_confirmed = reservation is not None and reservation.is_confirmed
            if still_confirmed:
                reservation.remote_event_id = remote_event_id

        if still_confirmed:
            logger.info("reservation_mirrored", reservation_id=reservation_id, event_id=remote_event_id)
            return

        # Cancelled while the event was being created
        await self._gateway.delete_event(admin_id, remote_event_id)
        logger.info("reservation_mirror_discarded", reservation_id=reservation_id, event_id=remote_event_id)

    async def _remove_mirror(self, reservation_id: str, admin_id: str, remote_event_id: str) -> None:
        await self._gateway.delete_event(admin_id, remote_event_id)
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(Reservation)
                .where(Reservation.id == reservation_id, Reservation.remote_event_id == remote_event_id)
                .values(remote_event_id=None)
            )
        logger.info("reservation_mirror_removed", reservation_id=reservation_id, event_id=remote_event_id)
