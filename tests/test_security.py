"""Tests for token encryption and caller identities."""

from __future__ import annotations

import pytest
from cryptography.exceptions import InvalidTag

from yoyaku.errors import Forbidden, Unauthorized, ValidationError
from yoyaku.security.encryption import _load_key, decrypt, encrypt, generate_key
from yoyaku.security.identity import (
    AuthenticatedUser,
    Guest,
    Role,
    is_valid_email,
    normalize_guest,
    require_admin,
    require_identity,
    require_user,
)


class TestEncryption:
    """Tests for AES-GCM token encryption."""

    def test_roundtrip(self) -> None:
        token = encrypt("ya29.secret-token")
        assert token != "ya29.secret-token"
        assert decrypt(token) == "ya29.secret-token"

    def test_nonce_makes_ciphertexts_differ(self) -> None:
        assert encrypt("same") != encrypt("same")

    def test_tampered_ciphertext_rejected(self) -> None:
        token = encrypt("secret")
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
        with pytest.raises(InvalidTag):
            decrypt(tampered)

    def test_generated_key_is_loadable(self) -> None:
        assert len(_load_key(generate_key())) == 32

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            _load_key("c2hvcnQ=")


class TestGuestValidation:
    """Tests for guest identity normalisation."""

    def test_trims_and_lowercases(self) -> None:
        guest = normalize_guest(Guest(name="  山田  ", email=" Yamada@Example.COM "))
        assert (guest.name, guest.email) == ("山田", "yamada@example.com")

    def test_blank_email_becomes_none(self) -> None:
        assert normalize_guest(Guest(name="山田", email="  ")).email is None

    def test_missing_name(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            normalize_guest(Guest(name=" "))
        assert exc_info.value.fields == {"guest.name": "Name is required"}

    def test_malformed_email(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            normalize_guest(Guest(name="山田", email="not-an-email"))
        assert "guest.email" in exc_info.value.fields

    @pytest.mark.parametrize("value,expected", [
        ("a@example.com", True),
        ("a.b+c@sub.example.co.jp", True),
        ("a@b", False),
        ("a @example.com", False),
        ("", False),
    ])
    def test_is_valid_email(self, value: str, expected: bool) -> None:
        assert is_valid_email(value) is expected


class TestAccessRules:
    """Tests for the booking policy and role checks."""

    def test_anonymous_rejected(self) -> None:
        with pytest.raises(Unauthorized):
            require_identity(None, allow_guests=True)

    def test_guest_allowed_by_policy(self) -> None:
        identity = require_identity(Guest(name=" G "), allow_guests=True)
        assert identity == Guest(name="G")

    def test_guest_rejected_by_policy(self) -> None:
        with pytest.raises(Unauthorized):
            require_identity(Guest(name="G"), allow_guests=False)

    def test_user_always_allowed(self) -> None:
        user = AuthenticatedUser(user_id="u1")
        assert require_identity(user, allow_guests=False) is user

    def test_require_user_rejects_guest(self) -> None:
        with pytest.raises(Unauthorized):
            require_user(Guest(name="G"))

    def test_require_admin(self) -> None:
        admin = AuthenticatedUser(user_id="a1", role=Role.ADMIN)
        assert require_admin(admin) is admin
        with pytest.raises(Forbidden):
            require_admin(AuthenticatedUser(user_id="m1"))

    def test_display_names(self) -> None:
        assert AuthenticatedUser(user_id="u1").display_name == "メンバー"
        assert AuthenticatedUser(user_id="u1", name="花子").display_name == "花子"
        assert Guest(name="山田").display_name == "山田"
