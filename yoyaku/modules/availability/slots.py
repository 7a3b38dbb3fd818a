"""Turn availability blocks into bookable fixed-width slots.

A slot is emitted only when it fits entirely inside its block and does not
overlap any busy interval on the admin's calendar. Confirmed reservations of
the same admin that overlap the slot are attached to it. Slots are computed on
every read and never stored.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from collections import defaultdict
from typing import Iterable, Iterator, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from yoyaku.clock import Clock, SystemClock, UtcDatetime, overlaps
from yoyaku.config import Settings, get_settings
from yoyaku.database import get_session_factory, session_scope
from yoyaku.errors import YoyakuError
from yoyaku.logging_config import get_logger
from yoyaku.modules.availability.models import AvailabilityBlock
from yoyaku.modules.calendar.models import BusyInterval
from yoyaku.modules.calendar.providers import CalendarGateway
from yoyaku.modules.reservations.models import Reservation, ReservationStatus, ReservationSummary
from yoyaku.modules.users.models import UserSummary

logger = get_logger(__name__)


class Slot(BaseModel):
    """One bookable subdivision of a block."""

    block_id: str
    admin: Optional[UserSummary] = None
    start_time: UtcDatetime
    end_time: UtcDatetime
    reservations: list[ReservationSummary] = Field(default_factory=list)


def walk_block(start: dt.datetime, end: dt.datetime, step: dt.timedelta) -> Iterator[tuple[dt.datetime, dt.datetime]]:
    """Yield consecutive ``step``-wide windows from ``start``; a partial trailing window is dropped."""
    slot_start = start
    while slot_start < end:
        slot_end = slot_start + step
        if slot_end > end:
            return
        yield slot_start, slot_end
        slot_start = slot_end


def slots_for_block(
    block: AvailabilityBlock,
    busy: Iterable[BusyInterval],
    reservations: Iterable[Reservation],
    step: dt.timedelta,
) -> list[Slot]:
    """Slots of one block after busy filtering, with overlapping reservations attached."""
    busy = list(busy)
    reservations = list(reservations)
    admin = UserSummary.from_row(block.admin) if block.admin else None

    slots = []
    for slot_start, slot_end in walk_block(block.start_time, block.end_time, step):
        if any(overlaps(slot_start, slot_end, b.start, b.end) for b in busy):
            continue
        attached = [
            ReservationSummary.from_row(r)
            for r in reservations
            if overlaps(slot_start, slot_end, r.start_time, r.end_time)
        ]
        slots.append(Slot(
            block_id=block.id,
            admin=admin,
            start_time=slot_start,
            end_time=slot_end,
            reservations=attached,
        ))
    return slots


class SlotDeriver:
    """Computes the bookable slot list across every admin with upcoming blocks."""

    def __init__(
        self,
        gateway: CalendarGateway,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._gateway = gateway
        self._session_factory = session_factory or get_session_factory()
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()

    async def derive_slots(self, now: Optional[dt.datetime] = None) -> list[Slot]:
        """All slots from blocks starting at or after ``now``, in block start order.

        Busy time is fetched once per admin over the span of that admin's
        blocks. An admin whose busy time cannot be read contributes no slots;
        the other admins are unaffected.
        """
        now = now or self._clock.now()

        async with session_scope(self._session_factory) as session:
            blocks = list((await session.execute(
                select(AvailabilityBlock)
                .where(AvailabilityBlock.start_time >= now)
                .order_by(AvailabilityBlock.start_time, AvailabilityBlock.id)
            )).scalars().all())
            if not blocks:
                return []

            span_start = min(b.start_time for b in blocks)
            span_end = max(b.end_time for b in blocks)
            reservations = list((await session.execute(
                select(Reservation).where(
                    Reservation.status == ReservationStatus.CONFIRMED.value,
                    Reservation.start_time < span_end,
                    Reservation.end_time > span_start,
                ).order_by(Reservation.start_time, Reservation.created_at)
            )).scalars().all())

        reservations_by_admin: dict[str, list[Reservation]] = defaultdict(list)
        for reservation in reservations:
            reservations_by_admin[reservation.admin_id].append(reservation)

        busy_by_admin = await self._busy_by_admin(blocks, reservations_by_admin)

        slots: list[Slot] = []
        for block in blocks:
            if block.admin_id not in busy_by_admin:
                continue
            slots.extend(slots_for_block(
                block,
                busy_by_admin[block.admin_id],
                reservations_by_admin.get(block.admin_id, []),
                self._settings.slot_length,
            ))

        logger.debug("slots_derived", blocks=len(blocks), slots=len(slots))
        return slots

    async def _busy_by_admin(
        self,
        blocks: list[AvailabilityBlock],
        reservations_by_admin: dict[str, list[Reservation]],
    ) -> dict[str, list[BusyInterval]]:
        spans: dict[str, tuple[dt.datetime, dt.datetime]] = {}
        for block in blocks:
            lo, hi = spans.get(block.admin_id, (block.start_time, block.end_time))
            spans[block.admin_id] = (min(lo, block.start_time), max(hi, block.end_time))

        admin_ids = list(spans)
        results = await asyncio.gather(*(
            self._gateway.list_busy_intervals(admin_id, *spans[admin_id])
            for admin_id in admin_ids
        ), return_exceptions=True)

        busy_by_admin = {}
        for admin_id, intervals in zip(admin_ids, results):
            if isinstance(intervals, YoyakuError):
                # Unknown busy time means nothing of this admin can be offered
                logger.warning("busy_lookup_failed", admin_id=admin_id, error=intervals.code, detail=intervals.message)
                continue
            if isinstance(intervals, BaseException):
                raise intervals
            # The admin's copies of our own bookings are not outside commitments
            mirrored = {r.remote_event_id for r in reservations_by_admin.get(admin_id, []) if r.remote_event_id}
            busy_by_admin[admin_id] = [b for b in intervals if b.remote_id is None or b.remote_id not in mirrored]
        return busy_by_admin
