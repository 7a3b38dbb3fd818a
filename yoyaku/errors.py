"""Domain errors raised by the booking engine.

Each error carries the HTTP status the API layer renders it with and a stable
``code`` clients can switch on.
"""

from __future__ import annotations

from typing import Optional


class YoyakuError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class Unauthorized(YoyakuError):
    status_code = 401
    code = "unauthorized"


class Forbidden(YoyakuError):
    status_code = 403
    code = "forbidden"


class ValidationError(YoyakuError):
    """Malformed input, with a per-field breakdown."""

    status_code = 400
    code = "validation_error"

    def __init__(self, message: str = "Invalid request", fields: Optional[dict[str, str]] = None) -> None:
        super().__init__(message)
        self.fields = fields or {}

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["fields"] = self.fields
        return data


class NotFound(YoyakuError):
    status_code = 404
    code = "not_found"


class InvalidState(YoyakuError):
    status_code = 409
    code = "invalid_state"


class TypeNotJoinable(YoyakuError):
    status_code = 409
    code = "type_not_joinable"


class AlreadyJoined(YoyakuError):
    status_code = 409
    code = "already_joined"


class CredentialsMissing(YoyakuError):
    """The user has never granted calendar access (no refresh token stored)."""

    status_code = 424
    code = "credentials_missing"


class RemoteUnavailable(YoyakuError):
    """The calendar provider failed, timed out or rejected the call."""

    status_code = 502
    code = "remote_unavailable"


class SyncFailed(YoyakuError):
    status_code = 502
    code = "sync_failed"
