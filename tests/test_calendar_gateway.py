"""Tests for the Google Calendar gateway."""

from __future__ import annotations

import datetime as dt
import time
from unittest.mock import AsyncMock, MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError
from tenacity import wait_none

from tests.fakes import MARKER
from yoyaku.errors import CredentialsMissing, RemoteUnavailable
from yoyaku.modules.calendar.models import EventDraft, EventPatch
from yoyaku.modules.calendar.providers import (
    GoogleCalendarGateway,
    parse_busy_intervals,
    parse_google_time,
    parse_tagged_events,
)
from yoyaku.modules.users.models import StoredCredentials


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": str(status)}), b"error")


def _timed(event_id: str, summary: str, start: str, end: str, **extra) -> dict:
    return {"id": event_id, "summary": summary, "start": {"dateTime": start}, "end": {"dateTime": end}, **extra}


class TestParsing:
    """Tests for turning Google payloads into gateway models."""

    def test_parse_zulu_and_offset_times(self) -> None:
        assert parse_google_time({"dateTime": "2026-03-03T10:00:00Z"}) == dt.datetime(2026, 3, 3, 10, 0)
        assert parse_google_time({"dateTime": "2026-03-03T19:00:00+09:00"}) == dt.datetime(2026, 3, 3, 10, 0)

    def test_parse_all_day(self) -> None:
        assert parse_google_time({"date": "2026-03-03"}) == dt.datetime(2026, 3, 3, 0, 0)
        assert parse_google_time({}) is None

    def test_tagged_events_need_marker_and_times(self) -> None:
        items = [
            _timed("a", f"{MARKER} 面談", "2026-03-03T10:00:00Z", "2026-03-03T11:00:00Z"),
            _timed("b", "定例", "2026-03-03T12:00:00Z", "2026-03-03T13:00:00Z"),
            {"id": "c", "summary": MARKER, "start": {"date": "2026-03-04"}, "end": {"date": "2026-03-05"}},
        ]

        events = parse_tagged_events(items, MARKER)

        assert [(e.remote_id, e.title) for e in events] == [("a", f"{MARKER} 面談")]
        assert (events[0].start, events[0].end) == (dt.datetime(2026, 3, 3, 10), dt.datetime(2026, 3, 3, 11))

    def test_busy_intervals_skip_marker_and_cancelled(self) -> None:
        items = [
            _timed("a", f"{MARKER} 面談", "2026-03-03T10:00:00Z", "2026-03-03T11:00:00Z"),
            _timed("b", "定例", "2026-03-03T12:00:00Z", "2026-03-03T13:00:00Z"),
            _timed("c", "中止", "2026-03-03T14:00:00Z", "2026-03-03T15:00:00Z", status="cancelled"),
            {"id": "d", "summary": "休暇", "start": {"date": "2026-03-04"}, "end": {"date": "2026-03-05"}},
        ]

        intervals = parse_busy_intervals(items, MARKER)

        assert [(i.remote_id, i.start, i.end) for i in intervals] == [
            ("b", dt.datetime(2026, 3, 3, 12), dt.datetime(2026, 3, 3, 13)),
            ("d", dt.datetime(2026, 3, 4), dt.datetime(2026, 3, 5)),
        ]


class TestGoogleCalendarGateway:
    """Tests for GoogleCalendarGateway against a mocked API client."""

    @pytest.fixture
    def store(self):
        store = MagicMock()
        store.load = AsyncMock(return_value=StoredCredentials(
            user_id="u1", access_token="at-1", refresh_token="rt-1", expiry=None,
        ))
        store.save_refreshed = AsyncMock(return_value=True)
        return store

    @pytest.fixture
    def creds(self):
        creds = MagicMock()
        creds.valid = True
        creds.token = "at-1"
        creds.expiry = None
        return creds

    @pytest.fixture
    def service(self):
        return MagicMock()

    @pytest.fixture
    def google(self, store, creds, service, settings) -> GoogleCalendarGateway:
        gateway = GoogleCalendarGateway(store, settings)
        gateway._retry_wait = wait_none()
        gateway._build_credentials = MagicMock(return_value=creds)
        gateway._build_service = MagicMock(return_value=service)
        return gateway

    @pytest.mark.asyncio
    async def test_list_tagged_events_paginates(self, google, service) -> None:
        events_api = service.events.return_value
        events_api.list.return_value.execute.side_effect = [
            {"items": [_timed("a", f"{MARKER} A", "2026-03-03T10:00:00Z", "2026-03-03T11:00:00Z")], "nextPageToken": "p2"},
            {"items": [_timed("b", f"{MARKER} B", "2026-03-04T10:00:00Z", "2026-03-04T11:00:00Z")]},
        ]

        events = await google.list_tagged_events("u1", dt.datetime(2026, 3, 2), dt.datetime(2026, 4, 1))

        assert [e.remote_id for e in events] == ["a", "b"]
        first, second = events_api.list.call_args_list
        assert first.kwargs["calendarId"] == "primary"
        assert first.kwargs["q"] == MARKER
        assert first.kwargs["singleEvents"] is True
        assert first.kwargs["timeMin"] == "2026-03-02T00:00:00+00:00"
        assert second.kwargs["pageToken"] == "p2"

    @pytest.mark.asyncio
    async def test_create_event_body(self, google, service) -> None:
        insert = service.events.return_value.insert
        insert.return_value.execute.return_value = {"id": "ev-1"}

        event_id = await google.create_event("u1", EventDraft(
            summary="【予約】花子との面談",
            description="議題: 相談",
            start=dt.datetime(2026, 3, 3, 10),
            end=dt.datetime(2026, 3, 3, 10, 30),
            attendee_emails=["hanako@example.com"],
        ))

        assert event_id == "ev-1"
        kwargs = insert.call_args.kwargs
        assert kwargs["sendUpdates"] == "all"
        assert kwargs["body"]["start"] == {"dateTime": "2026-03-03T10:00:00+00:00", "timeZone": "Asia/Tokyo"}
        assert kwargs["body"]["attendees"] == [{"email": "hanako@example.com"}]
        assert kwargs["body"]["description"] == "議題: 相談"

    @pytest.mark.asyncio
    async def test_update_replaces_attendees(self, google, service) -> None:
        patch_call = service.events.return_value.patch
        patch_call.return_value.execute.return_value = {}

        await google.update_event("u1", "ev-1", EventPatch(attendee_emails=["a@example.com", "b@example.com"]))

        kwargs = patch_call.call_args.kwargs
        assert kwargs["eventId"] == "ev-1"
        assert kwargs["body"] == {"attendees": [{"email": "a@example.com"}, {"email": "b@example.com"}]}

    @pytest.mark.asyncio
    async def test_empty_update_makes_no_call(self, google, store) -> None:
        await google.update_event("u1", "ev-1", EventPatch())
        store.load.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_of_missing_event_succeeds(self, google, service) -> None:
        service.events.return_value.delete.return_value.execute.side_effect = _http_error(410)
        await google.delete_event("u1", "ev-gone")

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, google, service) -> None:
        execute = service.events.return_value.list.return_value.execute
        execute.side_effect = [_http_error(503), {"items": []}]

        assert await google.list_busy_intervals("u1", dt.datetime(2026, 3, 3), dt.datetime(2026, 3, 4)) == []
        assert execute.call_count == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_becomes_remote_unavailable(self, google, service) -> None:
        execute = service.events.return_value.delete.return_value.execute
        execute.side_effect = _http_error(500)

        with pytest.raises(RemoteUnavailable):
            await google.delete_event("u1", "ev-1")
        assert execute.call_count == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, google, service) -> None:
        execute = service.events.return_value.insert.return_value.execute
        execute.side_effect = _http_error(403)

        with pytest.raises(RemoteUnavailable):
            await google.create_event("u1", EventDraft(
                summary="x", start=dt.datetime(2026, 3, 3, 10), end=dt.datetime(2026, 3, 3, 11),
            ))
        assert execute.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_remote_unavailable(self, store, creds, service, settings) -> None:
        gateway = GoogleCalendarGateway(
            store, settings.model_copy(update={"calendar_timeout_seconds": 0.05, "calendar_retry_attempts": 1}),
        )
        gateway._build_credentials = MagicMock(return_value=creds)
        gateway._build_service = MagicMock(return_value=service)
        service.events.return_value.list.return_value.execute.side_effect = lambda: time.sleep(0.3)

        with pytest.raises(RemoteUnavailable):
            await gateway.list_busy_intervals("u1", dt.datetime(2026, 3, 3), dt.datetime(2026, 3, 4))

    @pytest.mark.asyncio
    async def test_rotated_token_is_persisted(self, google, store, creds, service) -> None:
        """An expired token is refreshed and the new one stored before returning."""
        new_expiry = dt.datetime(2026, 3, 3, 11, 0)
        creds.valid = False

        def _refresh(_request):
            creds.token = "at-2"
            creds.expiry = new_expiry

        creds.refresh.side_effect = _refresh
        service.events.return_value.list.return_value.execute.return_value = {"items": []}

        await google.list_busy_intervals("u1", dt.datetime(2026, 3, 3), dt.datetime(2026, 3, 4))

        creds.refresh.assert_called_once()
        store.save_refreshed.assert_awaited_once_with("u1", "at-2", new_expiry)

    @pytest.mark.asyncio
    async def test_unchanged_token_not_persisted(self, google, store, service) -> None:
        service.events.return_value.list.return_value.execute.return_value = {"items": []}

        await google.list_busy_intervals("u1", dt.datetime(2026, 3, 3), dt.datetime(2026, 3, 4))

        store.save_refreshed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_credentials(self, google, store) -> None:
        store.load.side_effect = CredentialsMissing("no token")

        with pytest.raises(CredentialsMissing):
            await google.list_tagged_events("u1", dt.datetime(2026, 3, 3), dt.datetime(2026, 3, 4))
        google._build_service.assert_not_called()
