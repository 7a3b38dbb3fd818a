"""API route definitions for Yoyaku."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel

from yoyaku import __version__
from yoyaku.errors import Unauthorized
from yoyaku.logging_config import get_logger
from yoyaku.modules.availability.models import BlockView, SyncResult
from yoyaku.modules.availability.slots import Slot
from yoyaku.modules.reservations.models import ReservationType, ReservationView
from yoyaku.modules.reservations.service import SCOPE_ALL, SCOPE_MINE
from yoyaku.modules.users.models import UserSummary
from yoyaku.security.identity import (
    AuthenticatedUser,
    Guest,
    Identity,
    Role,
    require_admin,
    require_user,
)

logger = get_logger(__name__)

router = APIRouter()


# ── Request / Response Models ────────────────────────────────────────

class GuestIn(BaseModel):
    """Guest details supplied by an anonymous caller."""

    name: str = ""
    email: Optional[str] = None


class ReservationCreateRequest(BaseModel):
    """Booking request."""

    block_id: str
    start_time: dt.datetime
    end_time: dt.datetime
    type: ReservationType = ReservationType.ONE_ON_ONE
    title: Optional[str] = None
    agenda: Optional[str] = None
    guest: Optional[GuestIn] = None


class GuestRequest(BaseModel):
    """Body of join and cancel; only anonymous callers need to fill it."""

    guest: Optional[GuestIn] = None


class RoleRequest(BaseModel):
    """Role change request."""

    user_id: str
    role: Role


class LoginRequest(BaseModel):
    """Sign-in payload forwarded by the upstream auth layer."""

    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[dt.datetime] = None


class SuccessResponse(BaseModel):
    success: bool = True


class UserResponse(UserSummary):
    role: Role


# ── Orchestrator accessor (set from main.py) ────────────────────────

_orchestrator = None


def set_orchestrator(orch: Any) -> None:
    """Inject the orchestrator instance."""
    global _orchestrator
    _orchestrator = orch


def get_orchestrator():
    """Get the orchestrator, raising if not initialized."""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="System not initialized")
    return _orchestrator


# ── Identity ─────────────────────────────────────────────────────────

async def current_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[AuthenticatedUser]:
    """The signed-in user as asserted by the auth layer, if any."""
    return await get_orchestrator().resolve_user(x_user_id)


def _caller(user: Optional[AuthenticatedUser], guest: Optional[GuestIn]) -> Optional[Identity]:
    if user is not None:
        return user
    if guest is not None:
        return Guest(name=guest.name, email=guest.email)
    return None


def _require_viewer(user: Optional[AuthenticatedUser]) -> None:
    # Anonymous browsing is only open when guests may book
    if user is None and not get_orchestrator().settings.allow_guest_booking:
        raise Unauthorized("Sign-in required")


# ── Health ───────────────────────────────────────────────────────────

@router.get("/health")
async def health_check() -> dict[str, Any]:
    """System health check."""
    orch = get_orchestrator()
    return {
        "status": "healthy",
        "version": __version__,
        "google_configured": orch.settings.google_configured,
        "guest_booking": orch.settings.allow_guest_booking,
        "pending_side_effects": orch.dispatcher.pending,
        "failed_side_effects": orch.dispatcher.failures,
    }


# ── Auth hook & admin ────────────────────────────────────────────────

@router.post("/auth/login", response_model=UserResponse)
async def login(
    request: LoginRequest,
    x_auth_secret: Optional[str] = Header(default=None),
) -> UserResponse:
    """Record a sign-in (user upsert plus Google tokens)."""
    orch = get_orchestrator()
    secret = orch.settings.auth_hook_secret
    if secret and x_auth_secret != secret:
        raise Unauthorized("Invalid auth hook secret")

    user = await orch.users.upsert_from_login(
        email=request.email,
        name=request.name,
        image=request.image,
        access_token=request.access_token,
        refresh_token=request.refresh_token,
        expires_at=request.expires_at,
    )
    return UserResponse(id=user.id, name=user.name, email=user.email, image=user.image, role=Role(user.role))


@router.patch("/admin/role", response_model=UserResponse)
async def change_role(
    request: RoleRequest,
    user: Optional[AuthenticatedUser] = Depends(current_user),
) -> UserResponse:
    """Promote or demote a user. Admin only."""
    orch = get_orchestrator()
    updated = await orch.users.set_role(require_admin(user), request.user_id, request.role)
    return UserResponse(
        id=updated.id, name=updated.name, email=updated.email, image=updated.image, role=Role(updated.role),
    )


# ── Availability ─────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncResult)
async def sync_availability(user: Optional[AuthenticatedUser] = Depends(current_user)) -> SyncResult:
    """Pull the calling admin's tagged calendar events into blocks."""
    admin = require_admin(user)
    return await get_orchestrator().availability.sync(admin.user_id)


@router.get("/blocks", response_model=list[BlockView])
async def list_blocks(user: Optional[AuthenticatedUser] = Depends(current_user)) -> list[BlockView]:
    """Upcoming availability blocks."""
    _require_viewer(user)
    blocks = await get_orchestrator().availability.list_blocks()
    return [BlockView.from_row(b) for b in blocks]


@router.get("/slots", response_model=list[Slot])
async def list_slots(user: Optional[AuthenticatedUser] = Depends(current_user)) -> list[Slot]:
    """Bookable 30-minute slots with the reservations already on them."""
    _require_viewer(user)
    return await get_orchestrator().slots.derive_slots()


# ── Reservations ─────────────────────────────────────────────────────

@router.get("/reservations", response_model=list[ReservationView])
async def list_reservations(
    scope: str = Query(SCOPE_MINE, pattern=f"^({SCOPE_MINE}|{SCOPE_ALL})$"),
    user: Optional[AuthenticatedUser] = Depends(current_user),
) -> list[ReservationView]:
    """Confirmed reservations of the caller, or all of them for admins."""
    reservations = await get_orchestrator().reservations.list_reservations(require_user(user), scope)
    return [ReservationView.from_row(r) for r in reservations]


@router.post("/reservations", response_model=ReservationView, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    request: ReservationCreateRequest,
    user: Optional[AuthenticatedUser] = Depends(current_user),
) -> ReservationView:
    """Book a window on a block."""
    reservation = await get_orchestrator().reservations.create(
        block_id=request.block_id,
        start_time=request.start_time,
        end_time=request.end_time,
        type=request.type,
        identity=_caller(user, request.guest),
        title=request.title,
        agenda=request.agenda,
    )
    return ReservationView.from_row(reservation)


@router.get("/reservations/{reservation_id}", response_model=ReservationView)
async def get_reservation(
    reservation_id: str,
    user: Optional[AuthenticatedUser] = Depends(current_user),
) -> ReservationView:
    """One reservation with block, admin, creator and participants."""
    _require_viewer(user)
    reservation = await get_orchestrator().reservations.get(reservation_id)
    return ReservationView.from_row(reservation)


@router.post("/reservations/{reservation_id}/join", response_model=SuccessResponse)
async def join_reservation(
    reservation_id: str,
    request: Optional[GuestRequest] = None,
    user: Optional[AuthenticatedUser] = Depends(current_user),
) -> SuccessResponse:
    """Join a group reservation."""
    await get_orchestrator().reservations.join(reservation_id, _caller(user, request.guest if request else None))
    return SuccessResponse()


@router.delete("/reservations/{reservation_id}", response_model=SuccessResponse)
async def cancel_reservation(
    reservation_id: str,
    request: Optional[GuestRequest] = None,
    user: Optional[AuthenticatedUser] = Depends(current_user),
) -> SuccessResponse:
    """Cancel a reservation (creator, admin or participant)."""
    await get_orchestrator().reservations.cancel(reservation_id, _caller(user, request.guest if request else None))
    return SuccessResponse()
