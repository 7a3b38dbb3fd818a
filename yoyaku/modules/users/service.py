"""User records, sign-in upserts, roles and the OAuth credential store."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from cryptography.exceptions import InvalidTag
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from yoyaku.clock import to_naive_utc
from yoyaku.database import get_session_factory, session_scope
from yoyaku.errors import CredentialsMissing, NotFound
from yoyaku.logging_config import get_logger
from yoyaku.modules.users.models import StoredCredentials, User
from yoyaku.security.encryption import decrypt, encrypt
from yoyaku.security.identity import AuthenticatedUser, Role, require_admin

logger = get_logger(__name__)


def _encrypt_optional(value: Optional[str]) -> Optional[str]:
    return encrypt(value) if value else None


class UserService:
    """Look up users and manage sign-in state and roles."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    async def get_user(self, user_id: str) -> Optional[User]:
        async with session_scope(self._session_factory) as session:
            return await session.get(User, user_id)

    async def get_identity(self, user_id: str) -> Optional[AuthenticatedUser]:
        """Resolve a user id (as asserted by the auth layer) into an identity."""
        user = await self.get_user(user_id)
        if user is None:
            return None
        return AuthenticatedUser(
            user_id=user.id,
            role=Role(user.role),
            name=user.name,
            email=user.email,
        )

    async def upsert_from_login(
        self,
        email: str,
        name: Optional[str] = None,
        image: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[dt.datetime] = None,
    ) -> User:
        """Create or refresh a user after an OAuth sign-in, keyed by email.

        A sign-in that carries no refresh token keeps the stored one; Google
        only issues it on the first consent.
        """
        email = email.strip().lower()
        expiry = to_naive_utc(expires_at) if expires_at else None
        async with session_scope(self._session_factory) as session:
            user = (await session.execute(
                select(User).where(User.email == email)
            )).scalar_one_or_none()

            if user is None:
                user = User(email=email)
                session.add(user)
                created = True
            else:
                created = False

            user.name = name
            user.image = image
            user.access_token = _encrypt_optional(access_token)
            if refresh_token:
                user.refresh_token = encrypt(refresh_token)
            user.token_expiry = expiry
            await session.flush()

        logger.info("user_signed_in", user_id=user.id, created=created)
        return user

    async def set_role(self, actor: AuthenticatedUser, user_id: str, role: Role) -> User:
        """Change a user's role. Only admins may do this."""
        require_admin(actor)
        user = await self.grant_role(user_id, role)
        logger.info("user_role_changed", user_id=user_id, role=role, by=actor.user_id)
        return user

    async def grant_role(self, user_id: str, role: Role) -> User:
        """Set a role without an actor check; used to bootstrap the first admin."""
        async with session_scope(self._session_factory) as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            user.role = role.value
        return user


class CredentialStore:
    """Reads and forward-only updates of per-user OAuth tokens."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    async def load(self, user_id: str) -> StoredCredentials:
        """Return decrypted credentials.

        Raises:
            CredentialsMissing: if the user is unknown, has no refresh token,
                or the stored tokens cannot be decrypted with the current key.
        """
        async with session_scope(self._session_factory) as session:
            user = await session.get(User, user_id)

        if user is None or not user.refresh_token:
            raise CredentialsMissing(f"User {user_id} has no Google credentials")

        try:
            access_token = decrypt(user.access_token) if user.access_token else None
            refresh_token = decrypt(user.refresh_token)
        except (InvalidTag, ValueError) as exc:
            # binascii.Error is a ValueError; both mean the key changed or the row is corrupt
            logger.warning("credentials_undecryptable", user_id=user_id, error=type(exc).__name__)
            raise CredentialsMissing(f"User {user_id} must sign in again") from exc

        return StoredCredentials(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expiry=user.token_expiry,
        )

    async def save_refreshed(self, user_id: str, access_token: str, expiry: Optional[dt.datetime]) -> bool:
        """Persist a rotated access token.

        The update only applies when the new expiry is not older than the
        stored one, so a slower concurrent refresh cannot clobber a newer token.
        Returns True if a row was written.
        """
        values: dict = {"access_token": encrypt(access_token)}
        stmt = update(User).where(User.id == user_id)
        if expiry is not None:
            expiry = to_naive_utc(expiry)
            values["token_expiry"] = expiry
            stmt = stmt.where(or_(User.token_expiry.is_(None), User.token_expiry <= expiry))

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt.values(**values))
            written = (result.rowcount or 0) > 0

        logger.debug("access_token_refreshed", user_id=user_id, written=written)
        return written
