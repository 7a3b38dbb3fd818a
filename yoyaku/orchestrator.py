"""Central wiring: one object owning the services the API and CLI talk to."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from yoyaku.clock import Clock, SystemClock
from yoyaku.config import Settings, get_settings
from yoyaku.database import get_session_factory
from yoyaku.errors import Unauthorized
from yoyaku.logging_config import get_logger
from yoyaku.modules.availability.slots import SlotDeriver
from yoyaku.modules.availability.sync import AvailabilitySyncService
from yoyaku.modules.calendar.providers import CalendarGateway, GoogleCalendarGateway
from yoyaku.modules.reservations.service import ReservationService
from yoyaku.modules.task_queue.service import SideEffectDispatcher
from yoyaku.modules.users.service import CredentialStore, UserService
from yoyaku.security.identity import AuthenticatedUser

logger = get_logger(__name__)


class Orchestrator:
    """Builds and holds the gateway, services and side-effect dispatcher."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[CalendarGateway] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock or SystemClock()

        self.users = UserService(self.session_factory)
        self.credentials = CredentialStore(self.session_factory)
        self.gateway = gateway or GoogleCalendarGateway(self.credentials, self.settings)
        self.dispatcher = SideEffectDispatcher()

        self.availability = AvailabilitySyncService(
            self.gateway, self.session_factory, self.clock, self.settings,
        )
        self.slots = SlotDeriver(self.gateway, self.session_factory, self.clock, self.settings)
        self.reservations = ReservationService(
            self.gateway, self.dispatcher, self.session_factory, self.clock, self.settings,
        )

        if gateway is None and not self.settings.google_configured:
            logger.warning("google_not_configured")

    async def resolve_user(self, user_id: Optional[str]) -> Optional[AuthenticatedUser]:
        """Turn the id asserted by the auth layer into an identity.

        Raises:
            Unauthorized: an id was given but no such user exists.
        """
        if not user_id:
            return None
        identity = await self.users.get_identity(user_id)
        if identity is None:
            raise Unauthorized("Unknown user")
        return identity

    async def shutdown(self) -> None:
        """Let in-flight calendar mirroring finish, then cancel the rest."""
        await self.dispatcher.stop()
