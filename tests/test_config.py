"""Tests for the configuration module."""

from __future__ import annotations

import datetime as dt

import pytest
from pydantic import ValidationError

from yoyaku.config import Settings


class TestSettings:
    """Tests for the Settings class."""

    def test_defaults(self) -> None:
        """Booking defaults match the product rules."""
        settings = Settings(_env_file=None)
        assert settings.availability_marker == "[予約可]"
        assert settings.slot_length == dt.timedelta(minutes=30)
        assert settings.sync_window == dt.timedelta(days=30)
        assert settings.calendar_timezone == "Asia/Tokyo"
        assert settings.allow_guest_booking is True

    def test_cors_origin_list(self) -> None:
        settings = Settings(_env_file=None, cors_origins="https://a.example, https://b.example,")
        assert settings.cors_origin_list == ["https://a.example", "https://b.example"]

    def test_google_configured(self) -> None:
        assert Settings(_env_file=None, google_client_id="", google_client_secret="").google_configured is False
        assert Settings(_env_file=None, google_client_id="id", google_client_secret="secret").google_configured is True

    def test_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("SLOT_MINUTES", "15")
        monkeypatch.setenv("ALLOW_GUEST_BOOKING", "false")
        settings = Settings(_env_file=None)
        assert settings.slot_length == dt.timedelta(minutes=15)
        assert settings.allow_guest_booking is False

    @pytest.mark.parametrize("field", ["slot_minutes", "sync_window_days"])
    def test_non_positive_durations_rejected(self, field: str) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_blank_marker_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, availability_marker="  ")
