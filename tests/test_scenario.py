"""Walk one booking from tagged calendar event to cancellation."""

from __future__ import annotations

import pytest

from tests.fakes import MARKER, at
from yoyaku.modules.reservations.models import ReservationStatus, ReservationType
from yoyaku.security.identity import Guest, Role


@pytest.mark.asyncio
async def test_tag_sync_book_join_cancel(
    sync_service, slot_deriver, reservation_service, dispatcher, gateway, make_user,
) -> None:
    admin = await make_user("admin@example.com", "管理 太郎", Role.ADMIN)
    gateway.add_event(admin.id, f"{MARKER} 面談", at(10), at(11))

    result = await sync_service.sync(admin.id)
    assert (result.synced, result.removed) == (1, 0)

    slots = await slot_deriver.derive_slots()
    assert [(s.start_time, s.end_time) for s in slots] == [(at(10), at(10, 30)), (at(10, 30), at(11))]
    assert all(s.reservations == [] for s in slots)

    hanako = Guest(name="Hanako", email="hanako@example.com")
    reservation = await reservation_service.create(
        slots[0].block_id, at(10), at(10, 30), ReservationType.GROUP, hanako,
    )
    await dispatcher.drain()

    slots = await slot_deriver.derive_slots()
    (booked,) = slots[0].reservations
    assert booked.id == reservation.id
    assert len(booked.participants) == 1
    mirror = await reservation_service.get(reservation.id)
    assert mirror.remote_event_id in {e["id"] for e in gateway.events_of(admin.id)}

    await reservation_service.join(reservation.id, Guest(name="Jiro", email="jiro@example.com"))
    await dispatcher.drain()

    slots = await slot_deriver.derive_slots()
    assert len(slots[0].reservations[0].participants) == 2
    attendees = gateway.events[admin.id][mirror.remote_event_id]["attendees"]
    assert sorted(attendees) == ["hanako@example.com", "jiro@example.com"]

    cancelled = await reservation_service.cancel(reservation.id, hanako)
    await dispatcher.drain()

    assert cancelled.status == ReservationStatus.CANCELLED
    slots = await slot_deriver.derive_slots()
    assert [len(s.reservations) for s in slots] == [0, 0]
    assert [e["summary"] for e in gateway.events_of(admin.id)] == [f"{MARKER} 面談"]
