"""Pull tagged events from the admin's calendar into local availability blocks."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from yoyaku.clock import Clock, SystemClock
from yoyaku.config import Settings, get_settings
from yoyaku.database import get_session_factory, session_scope
from yoyaku.errors import CredentialsMissing, RemoteUnavailable, SyncFailed
from yoyaku.logging_config import get_logger
from yoyaku.modules.availability.models import AvailabilityBlock, SyncResult
from yoyaku.modules.calendar.models import RemoteEvent
from yoyaku.modules.calendar.providers import CalendarGateway

logger = get_logger(__name__)


def block_title(summary: str, marker: str) -> Optional[str]:
    """Event summary with the marker removed; blank becomes None."""
    return summary.replace(marker, "", 1).strip() or None


class AvailabilitySyncService:
    """Reconciles an admin's availability blocks with their tagged remote events.

    The remote event id is the only reconciliation key: a moved event updates
    the same block in place, and an event that vanished or lost its marker
    deletes its block.
    """

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

    async def sync(self, admin_id: str) -> SyncResult:
        """Run one sync pass for ``admin_id``.

        Raises:
            SyncFailed: if the remote listing fails for any reason.
        """
        now = self._clock.now()
        window_end = now + self._settings.sync_window
        try:
            events = await self._gateway.list_tagged_events(admin_id, now, window_end)
        except (RemoteUnavailable, CredentialsMissing) as exc:
            logger.error("availability_sync_failed", admin_id=admin_id, error=str(exc))
            raise SyncFailed("Failed to sync calendar") from exc

        # Last occurrence wins if the provider repeats an id
        latest: dict[str, RemoteEvent] = {}
        for event in events:
            if event.start >= event.end:
                logger.warning("availability_event_skipped", remote_id=event.remote_id, reason="empty_window")
                continue
            latest[event.remote_id] = event

        async with session_scope(self._session_factory) as session:
            # Snapshot before any upsert so the stale diff is not affected by this pass
            known_ids = set((await session.execute(
                select(AvailabilityBlock.remote_event_id).where(
                    AvailabilityBlock.admin_id == admin_id,
                    AvailabilityBlock.remote_event_id.is_not(None),
                )
            )).scalars().all())

            changed = 0
            for event in latest.values():
                if await self._upsert(session, admin_id, event):
                    changed += 1

            stale = known_ids - latest.keys()
            if stale:
                await session.execute(
                    delete(AvailabilityBlock).where(
                        AvailabilityBlock.admin_id == admin_id,
                        AvailabilityBlock.remote_event_id.in_(stale),
                    )
                )

        result = SyncResult(synced=len(latest), removed=len(stale))
        logger.info(
            "availability_synced",
            admin_id=admin_id,
            synced=result.synced,
            removed=result.removed,
            changed=changed,
        )
        return result

    async def _upsert(self, session: AsyncSession, admin_id: str, event: RemoteEvent) -> bool:
        """Insert or update the block for ``event``; returns True if anything was written."""
        title = block_title(event.title, self._settings.availability_marker)
        block = (await session.execute(
            select(AvailabilityBlock).where(AvailabilityBlock.remote_event_id == event.remote_id)
        )).scalar_one_or_none()

        if block is None:
            session.add(AvailabilityBlock(
                admin_id=admin_id,
                remote_event_id=event.remote_id,
                title=title,
                start_time=event.start,
                end_time=event.end,
            ))
            return True

        if block.admin_id != admin_id:
            # The same remote event shows up on another admin's calendar (shared invite)
            logger.warning("availability_event_owned_elsewhere", remote_id=event.remote_id, owner=block.admin_id)
            return False

        if (block.title, block.start_time, block.end_time) == (title, event.start, event.end):
            return False

        block.title = title
        block.start_time = event.start
        block.end_time = event.end
        return True

    async def list_blocks(self, now: Optional[dt.datetime] = None) -> list[AvailabilityBlock]:
        """Blocks starting at or after ``now``, earliest first."""
        now = now or self._clock.now()
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(AvailabilityBlock)
                .where(AvailabilityBlock.start_time >= now)
                .order_by(AvailabilityBlock.start_time, AvailabilityBlock.id)
            )
            return list(result.scalars().all())
