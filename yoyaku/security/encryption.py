"""AES-256 encryption for OAuth tokens stored in the database."""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from yoyaku.config import get_settings
from yoyaku.logging_config import get_logger

logger = get_logger(__name__)

_cipher: Optional[AESGCM] = None


def _load_key(key_b64: str) -> bytes:
    padded = key_b64 + "=" * (-len(key_b64) % 4)
    key = base64.urlsafe_b64decode(padded)
    if len(key) != 32:
        raise ValueError(f"Key is {len(key)} bytes, need 32")
    return key


def _get_cipher() -> AESGCM:
    """Return or create the AES-GCM cipher from the configured key."""
    global _cipher
    if _cipher is not None:
        return _cipher

    key_b64 = get_settings().yoyaku_encryption_key
    if key_b64:
        key = _load_key(key_b64)
    else:
        # Tokens written with this key are unreadable after a restart
        key = AESGCM.generate_key(bit_length=256)
        logger.warning("encryption_key_missing", msg="Using an ephemeral key; set YOYAKU_ENCRYPTION_KEY")

    _cipher = AESGCM(key)
    return _cipher


def generate_key() -> str:
    """Return a fresh base64 key suitable for YOYAKU_ENCRYPTION_KEY."""
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def encrypt(plaintext: str) -> str:
    """Encrypt a plaintext string, returning base64-encoded ciphertext with nonce."""
    cipher = _get_cipher()
    nonce = os.urandom(12)
    ciphertext = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")


def decrypt(token: str) -> str:
    """Decrypt a base64-encoded token back to plaintext."""
    cipher = _get_cipher()
    padded = token + "=" * (-len(token) % 4)
    raw = base64.urlsafe_b64decode(padded)
    nonce, ciphertext = raw[:12], raw[12:]
    return cipher.decrypt(nonce, ciphertext, None).decode("utf-8")
