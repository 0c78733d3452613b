"""Credential vault: AES-256-GCM sealing of OAuth secrets at rest.

Sealed format is ``nonce || ciphertext``, where the 12-byte nonce is drawn
fresh from the OS for every ``seal`` call. There is no way to pass a nonce in,
so two seals under one key never share one.
"""

from __future__ import annotations

import logging
import os
import string
from functools import lru_cache
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import settings

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12

_HEX_DIGITS = set(string.hexdigits)


class InvalidKeyError(ValueError):
    """Encryption key is missing or malformed. Fatal at startup."""


class SealedDataError(Exception):
    """Sealed blob is truncated, corrupted, or was sealed under another key."""


def _is_hex(s: str) -> bool:
    return bool(s) and all(c in _HEX_DIGITS for c in s)


def decode_key(raw: Union[str, bytes, None]) -> bytes:
    """
    Accept either 32 raw bytes or a 64-char hex string.

    Strings are trimmed of whitespace and surrounding quotes, and a ``0x``
    prefix is tolerated for hex.
    """
    if raw is None or len(raw) == 0:
        raise InvalidKeyError("encryption key is empty (set ENCRYPTION_KEY)")

    if isinstance(raw, bytes):
        if len(raw) == KEY_SIZE:
            return raw
        try:
            raw = raw.decode("ascii")
        except UnicodeDecodeError:
            raise InvalidKeyError("encryption key must be 32 raw bytes or 64-char hex") from None

    k = raw.strip().strip("\"'")
    if k[:2] in ("0x", "0X"):
        k = k[2:]

    if _is_hex(k) and len(k) % 2 == 0:
        key = bytes.fromhex(k)
        if len(key) != KEY_SIZE:
            raise InvalidKeyError("hex key must represent exactly 32 bytes (64 hex chars)")
        return key

    key = k.encode("utf-8")
    if len(key) == KEY_SIZE:
        return key

    raise InvalidKeyError("encryption key must be 32 raw bytes or 64-char hex")


class SecretBox:
    """Authenticated encryption of opaque byte secrets under one process-wide key."""

    def __init__(self, key: Union[str, bytes]):
        self._aead = AESGCM(decode_key(key))

    def seal(self, plaintext: bytes) -> bytes:
        # os.urandom only fails if the OS randomness source is unavailable.
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, bytes(plaintext), None)

    def open(self, sealed: bytes) -> bytes:
        if sealed is None or len(sealed) < NONCE_SIZE:
            raise SealedDataError("ciphertext too short")
        nonce, ciphertext = bytes(sealed[:NONCE_SIZE]), bytes(sealed[NONCE_SIZE:])
        try:
            return self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise SealedDataError("ciphertext failed authentication") from None


@lru_cache(maxsize=1)
def get_secret_box() -> SecretBox:
    """Process-wide vault built from settings.encryption_key."""
    box = SecretBox(settings.encryption_key)
    logger.info("Credential vault initialized")
    return box
