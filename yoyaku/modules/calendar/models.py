"""Data shapes exchanged with the remote calendar."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field


class RemoteEvent(BaseModel):
    """A timed event carrying the availability marker."""

    remote_id: str
    title: str
    start: dt.datetime
    end: dt.datetime


class BusyInterval(BaseModel):
    """Time the owner is committed elsewhere."""

    remote_id: Optional[str] = None
    start: dt.datetime
    end: dt.datetime


class EventDraft(BaseModel):
    """An event to create on a user's primary calendar."""

    summary: str
    description: Optional[str] = None
    start: dt.datetime
    end: dt.datetime
    attendee_emails: list[str] = Field(default_factory=list)


class EventPatch(BaseModel):
    """Partial update. A given attendee list replaces the previous one."""

    summary: Optional[str] = None
    description: Optional[str] = None
    attendee_emails: Optional[list[str]] = None

    def is_empty(self) -> bool:
        return self.summary is None and self.description is None and self.attendee_emails is None
