"""Shared test fixtures and configuration."""

from __future__ import annotations

import os
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

os.environ.setdefault("YOYAKU_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("YOYAKU_LOG_LEVEL", "WARNING")
os.environ.setdefault("YOYAKU_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")

from tests.fakes import MARKER, NOW, FakeCalendarGateway
from yoyaku.clock import FixedClock
from yoyaku.config import Settings
from yoyaku.database import build_engine, create_tables
from yoyaku.modules.availability.slots import SlotDeriver
from yoyaku.modules.availability.sync import AvailabilitySyncService
from yoyaku.modules.reservations.service import ReservationService
from yoyaku.modules.task_queue.service import SideEffectDispatcher
from yoyaku.modules.users.models import User
from yoyaku.security.encryption import encrypt
from yoyaku.security.identity import Role


@pytest.fixture
def settings() -> Settings:
    """Return test settings."""
    return Settings(
        yoyaku_env="test",
        yoyaku_log_level="WARNING",
        database_url="sqlite+aiosqlite:///:memory:",
        availability_marker=MARKER,
        calendar_retry_attempts=2,
        calendar_timeout_seconds=1.0,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def gateway() -> FakeCalendarGateway:
    return FakeCalendarGateway()


@pytest_asyncio.fixture
async def dispatcher(session_factory) -> AsyncGenerator[SideEffectDispatcher, None]:
    """Side-effect runner, drained before the database goes away."""
    runner = SideEffectDispatcher()
    yield runner
    await runner.stop()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_user(session_factory):
    """Factory inserting a user with a stored refresh token."""

    async def _make(
        email: str,
        name: Optional[str] = None,
        role: Role = Role.MEMBER,
        refresh_token: Optional[str] = "refresh-token",
    ) -> User:
        async with session_factory() as session:
            user = User(
                email=email,
                name=name,
                role=role.value,
                refresh_token=encrypt(refresh_token) if refresh_token else None,
            )
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def sync_service(gateway, session_factory, clock, settings) -> AvailabilitySyncService:
    return AvailabilitySyncService(gateway, session_factory, clock, settings)


@pytest.fixture
def slot_deriver(gateway, session_factory, clock, settings) -> SlotDeriver:
    return SlotDeriver(gateway, session_factory, clock, settings)


@pytest.fixture
def reservation_service(gateway, dispatcher, session_factory, clock, settings) -> ReservationService:
    return ReservationService(gateway, dispatcher, session_factory, clock, settings)
