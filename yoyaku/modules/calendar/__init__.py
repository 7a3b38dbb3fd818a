"""Remote calendar gateway (Google Calendar)."""

from yoyaku.modules.calendar.models import BusyInterval, EventDraft, EventPatch, RemoteEvent
from yoyaku.modules.calendar.providers import CalendarGateway, GoogleCalendarGateway

__all__ = [
    "BusyInterval",
    "CalendarGateway",
    "EventDraft",
    "EventPatch",
    "GoogleCalendarGateway",
    "RemoteEvent",
]
