"""Time source used wherever "now" matters, plus UTC normalization helpers."""

from __future__ import annotations

import datetime as dt
from typing import Annotated, Protocol

from pydantic import PlainSerializer


def to_naive_utc(value: dt.datetime) -> dt.datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(dt.UTC).replace(tzinfo=None)


def as_utc(value: dt.datetime) -> dt.datetime:
    """Attach UTC to a naive-UTC datetime for serialization."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC)


def overlaps(
    start_a: dt.datetime, end_a: dt.datetime, start_b: dt.datetime, end_b: dt.datetime,
) -> bool:
    """Half-open interval overlap: [start_a, end_a) intersects [start_b, end_b)."""
    return start_a < end_b and end_a > start_b


class Clock(Protocol):
    """Anything that can tell the current time."""

    def now(self) -> dt.datetime:
        ...


class SystemClock:
    """Wall clock, naive UTC."""

    def now(self) -> dt.datetime:
        return dt.datetime.now(dt.UTC).replace(tzinfo=None)


class FixedClock:
    """Clock frozen at a given instant; advance() moves it forward."""

    def __init__(self, instant: dt.datetime) -> None:
        self._instant = to_naive_utc(instant)

    def now(self) -> dt.datetime:
        return self._instant

    def advance(self, delta: dt.timedelta) -> None:
        self._instant += delta


UtcDatetime = Annotated[
    dt.datetime,
    PlainSerializer(lambda v: as_utc(v).isoformat(), return_type=str, when_used="json"),
]
"""Naive-UTC datetime that serializes to JSON with an explicit UTC offset."""
