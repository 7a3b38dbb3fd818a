"""Yoyaku: meeting-slot booking backed by the admin's Google Calendar."""

__version__ = "0.3.0"
