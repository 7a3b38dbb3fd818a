"""Caller identities and the access rules applied at the service boundary.

A caller is either an authenticated user (resolved from the upstream auth
layer) or an anonymous guest who supplies a name and, optionally, an email.
Both forms are accepted by the booking operations; whether guests are let in
at all is a single policy switch (``allow_guest_booking``).
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Literal, Optional, Union

from pydantic import BaseModel

from yoyaku.errors import Forbidden, Unauthorized, ValidationError
from yoyaku.logging_config import get_logger

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_MEMBER_NAME = "メンバー"
DEFAULT_ADMIN_NAME = "管理者"


class Role(StrEnum):
    """User roles."""

    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class AuthenticatedUser(BaseModel):
    """A signed-in user."""

    kind: Literal["user"] = "user"
    user_id: str
    role: Role = Role.MEMBER
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_name(self) -> str:
        return self.name or DEFAULT_MEMBER_NAME


class Guest(BaseModel):
    """An anonymous caller identified by name and, optionally, email."""

    kind: Literal["guest"] = "guest"
    name: str = ""
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name


Identity = Union[AuthenticatedUser, Guest]


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def normalize_guest(guest: Guest) -> Guest:
    """Validate a guest identity and return it with trimmed name and lowercased email.

    Raises:
        ValidationError: if the name is blank or the email is malformed.
    """
    fields: dict[str, str] = {}
    name = (guest.name or "").strip()
    email = (guest.email or "").strip().lower() or None

    if not name:
        fields["guest.name"] = "Name is required"
    if email is not None and not is_valid_email(email):
        fields["guest.email"] = "Invalid email address"
    if fields:
        raise ValidationError("Invalid guest identity", fields=fields)
    return Guest(name=name, email=email)


def require_identity(identity: Optional[Identity], allow_guests: bool) -> Identity:
    """Apply the booking policy to a caller.

    Authenticated users always pass. Guests pass only when guest booking is
    enabled, and are validated on the way through.
    """
    if identity is None:
        raise Unauthorized("Sign-in or guest details required")
    if isinstance(identity, Guest):
        if not allow_guests:
            raise Unauthorized("Sign-in required")
        return normalize_guest(identity)
    return identity


def require_user(identity: Optional[Identity]) -> AuthenticatedUser:
    """Only authenticated users may continue."""
    if not isinstance(identity, AuthenticatedUser):
        raise Unauthorized("Sign-in required")
    return identity


def require_admin(identity: Optional[Identity]) -> AuthenticatedUser:
    """Only authenticated admins may continue."""
    user = require_user(identity)
    if not user.is_admin:
        logger.warning("admin_required", user_id=user.user_id, role=user.role)
        raise Forbidden("Admin only")
    return user
