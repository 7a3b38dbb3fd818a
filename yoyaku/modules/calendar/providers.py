"""Remote calendar gateway: the interface plus its Google Calendar implementation.

Every call resolves the user's stored OAuth credentials first. When Google
rotates the access token during a call, the new token is written back before
the call returns.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from yoyaku.clock import as_utc, to_naive_utc
from yoyaku.config import Settings, get_settings
from yoyaku.errors import CredentialsMissing, RemoteUnavailable
from yoyaku.logging_config import get_logger
from yoyaku.modules.calendar.models import BusyInterval, EventDraft, EventPatch, RemoteEvent
from yoyaku.modules.users.models import StoredCredentials
from yoyaku.modules.users.service import CredentialStore

logger = get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
PRIMARY = "primary"
_TRANSIENT_STATUSES = {429, 500, 502, 503, 504}
_GONE_STATUSES = {404, 410}


class CalendarGateway(ABC):
    """Abstract remote calendar."""

    @abstractmethod
    async def list_tagged_events(
        self, admin_id: str, window_start: dt.datetime, window_end: dt.datetime,
    ) -> list[RemoteEvent]:
        """Timed events in range whose title contains the availability marker."""

    @abstractmethod
    async def list_busy_intervals(
        self, admin_id: str, window_start: dt.datetime, window_end: dt.datetime,
    ) -> list[BusyInterval]:
        """Every non-cancelled, non-marker event in range."""

    @abstractmethod
    async def create_event(self, user_id: str, draft: EventDraft) -> str:
        """Create an event on the user's primary calendar and notify attendees."""

    @abstractmethod
    async def update_event(self, user_id: str, remote_event_id: str, patch: EventPatch) -> None:
        """Patch an event and notify attendees."""

    @abstractmethod
    async def delete_event(self, user_id: str, remote_event_id: str) -> None:
        """Delete an event and notify attendees of the cancellation."""


# ── Google payload parsing ───────────────────────────────────────────

def parse_google_time(value: dict[str, Any]) -> Optional[dt.datetime]:
    """Parse a Google ``start``/``end`` object to naive UTC.

    Date-only values (all-day events) map to midnight UTC of that date.
    """
    if value.get("dateTime"):
        return to_naive_utc(dt.datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00")))
    if value.get("date"):
        return dt.datetime.combine(dt.date.fromisoformat(value["date"]), dt.time())
    return None


def parse_tagged_events(items: list[dict[str, Any]], marker: str) -> list[RemoteEvent]:
    """Keep marker-titled events that have concrete start and end timestamps."""
    events = []
    for item in items:
        start = item.get("start") or {}
        end = item.get("end") or {}
        summary = item.get("summary") or ""
        if not item.get("id") or not start.get("dateTime") or not end.get("dateTime"):
            continue
        if marker not in summary:
            continue
        events.append(RemoteEvent(
            remote_id=item["id"],
            title=summary,
            start=parse_google_time(start),
            end=parse_google_time(end),
        ))
    return events


def parse_busy_intervals(items: list[dict[str, Any]], marker: str) -> list[BusyInterval]:
    """Everything except marker events and cancelled events; all-day events count."""
    intervals = []
    for item in items:
        if marker in (item.get("summary") or ""):
            continue
        if item.get("status") == "cancelled":
            continue
        start = parse_google_time(item.get("start") or {})
        end = parse_google_time(item.get("end") or {})
        if start is not None and end is not None:
            intervals.append(BusyInterval(remote_id=item.get("id"), start=start, end=end))
    return intervals


def _http_status(exc: BaseException) -> Optional[int]:
    resp = getattr(exc, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _is_transient(exc: BaseException) -> bool:
    from googleapiclient.errors import HttpError

    if isinstance(exc, HttpError):
        return _http_status(exc) in _TRANSIENT_STATUSES
    return isinstance(exc, (TimeoutError, ConnectionError))


class GoogleCalendarGateway(CalendarGateway):
    """Google Calendar API v3 on each user's primary calendar."""

    def __init__(
        self,
        credential_store: Optional[CredentialStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = credential_store or CredentialStore()
        self._settings = settings or get_settings()
        self._retry_wait = wait_exponential(multiplier=0.5, min=0.5, max=5)

    # ── credentials ──────────────────────────────────────────────────

    def _build_credentials(self, stored: StoredCredentials):
        from google.oauth2.credentials import Credentials

        return Credentials(
            token=stored.access_token,
            refresh_token=stored.refresh_token,
            token_uri=self._settings.google_token_uri,
            client_id=self._settings.google_client_id,
            client_secret=self._settings.google_client_secret,
            scopes=SCOPES,
            expiry=stored.expiry,
        )

    def _build_service(self, creds):
        from googleapiclient.discovery import build

        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    async def _persist_if_rotated(self, user_id: str, creds, previous_token: Optional[str]) -> None:
        if creds.token and creds.token != previous_token:
            await self._store.save_refreshed(user_id, creds.token, creds.expiry)
            logger.info("google_token_rotated", user_id=user_id)

    # ── call plumbing ────────────────────────────────────────────────

    async def _call(self, user_id: str, operation: str, fn: Callable[[Any], Any]) -> Any:
        """Run ``fn(service)`` in a worker thread with timeout, retry and error mapping."""
        import httplib2
        from google.auth.exceptions import GoogleAuthError
        from google.auth.transport.requests import Request
        from googleapiclient.errors import HttpError

        stored = await self._store.load(user_id)
        creds = self._build_credentials(stored)
        previous_token = stored.access_token

        def _run():
            if not creds.valid:
                creds.refresh(Request())
            return fn(self._build_service(creds))

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self._settings.calendar_retry_attempts)),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await asyncio.wait_for(
                        asyncio.to_thread(_run),
                        timeout=self._settings.calendar_timeout_seconds,
                    )
        except CredentialsMissing:
            raise
        except TimeoutError as exc:
            logger.error("google_call_timeout", operation=operation, user_id=user_id)
            raise RemoteUnavailable(f"{operation} timed out") from exc
        except HttpError as exc:
            logger.error("google_call_failed", operation=operation, user_id=user_id, status=_http_status(exc))
            raise RemoteUnavailable(f"{operation} failed: HTTP {_http_status(exc)}") from exc
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            logger.error("google_call_failed", operation=operation, user_id=user_id, error=str(exc))
            raise RemoteUnavailable(f"{operation} failed: {exc}") from exc
        finally:
            await self._persist_if_rotated(user_id, creds, previous_token)

        return result

    def _list_items(self, service, window_start: dt.datetime, window_end: dt.datetime, q: Optional[str] = None) -> list[dict]:
        items: list[dict] = []
        page_token = None
        while True:
            params = {
                "calendarId": PRIMARY,
                "timeMin": as_utc(window_start).isoformat(),
                "timeMax": as_utc(window_end).isoformat(),
                "singleEvents": True,
                "orderBy": "startTime",
            }
            if q:
                params["q"] = q
            if page_token:
                params["pageToken"] = page_token
            response = service.events().list(**params).execute()
            items.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    def _time_body(self, value: dt.datetime) -> dict[str, str]:
        return {"dateTime": as_utc(value).isoformat(), "timeZone": self._settings.calendar_timezone}

    # ── gateway operations ───────────────────────────────────────────

    async def list_tagged_events(
        self, admin_id: str, window_start: dt.datetime, window_end: dt.datetime,
    ) -> list[RemoteEvent]:
        marker = self._settings.availability_marker
        items = await self._call(
            admin_id, "list_tagged_events",
            lambda service: self._list_items(service, window_start, window_end, q=marker),
        )
        return parse_tagged_events(items, marker)

    async def list_busy_intervals(
        self, admin_id: str, window_start: dt.datetime, window_end: dt.datetime,
    ) -> list[BusyInterval]:
        items = await self._call(
            admin_id, "list_busy_intervals",
            lambda service: self._list_items(service, window_start, window_end),
        )
        return parse_busy_intervals(items, self._settings.availability_marker)

    async def create_event(self, user_id: str, draft: EventDraft) -> str:
        body: dict[str, Any] = {
            "summary": draft.summary,
            "start": self._time_body(draft.start),
            "end": self._time_body(draft.end),
            "attendees": [{"email": email} for email in draft.attendee_emails],
        }
        if draft.description:
            body["description"] = draft.description

        result = await self._call(
            user_id, "create_event",
            lambda service: service.events().insert(
                calendarId=PRIMARY, body=body, sendUpdates="all",
            ).execute(),
        )
        logger.info("google_event_created", user_id=user_id, event_id=result.get("id"))
        if not result.get("id"):
            raise RemoteUnavailable("create_event returned no event id")
        return result["id"]

    async def update_event(self, user_id: str, remote_event_id: str, patch: EventPatch) -> None:
        if patch.is_empty():
            return
        body: dict[str, Any] = {}
        if patch.summary:
            body["summary"] = patch.summary
        if patch.description:
            body["description"] = patch.description
        if patch.attendee_emails is not None:
            body["attendees"] = [{"email": email} for email in patch.attendee_emails]

        await self._call(
            user_id, "update_event",
            lambda service: service.events().patch(
                calendarId=PRIMARY, eventId=remote_event_id, body=body, sendUpdates="all",
            ).execute(),
        )
        logger.info("google_event_updated", user_id=user_id, event_id=remote_event_id)

    async def delete_event(self, user_id: str, remote_event_id: str) -> None:
        from googleapiclient.errors import HttpError

        def _delete(service):
            try:
                service.events().delete(
                    calendarId=PRIMARY, eventId=remote_event_id, sendUpdates="all",
                ).execute()
            except HttpError as exc:
                # Already gone counts as deleted
                if _http_status(exc) not in _GONE_STATUSES:
                    raise
                logger.info("google_event_already_gone", event_id=remote_event_id)

        await self._call(user_id, "delete_event", _delete)
        logger.info("google_event_deleted", user_id=user_id, event_id=remote_event_id)
