"""Authenticated symmetric encryption of token strings.

Envelopes are ``nonce_hex:tag_hex:ciphertext_hex`` produced with AES-256-GCM.
This three-segment layout is the only format issued or accepted anywhere in
the service.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional
from urllib.parse import unquote

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_BYTES = 32
NONCE_BYTES = 16
TAG_BYTES = 16
SEPARATOR = ":"


class ConfigurationError(RuntimeError):
    """Raised when the cipher key is absent or unusable."""


class DecryptionError(Exception):
    """Generic envelope failure; never says which check failed."""

    def __init__(self, message: str = "Failed to decrypt token") -> None:
        super().__init__(message)


class TokenCipher:
    """Seal and open opaque strings with a pre-shared AES-256 key."""

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
            raise ConfigurationError(f"encryption key must be exactly {KEY_BYTES} bytes")
        self._aead = AESGCM(bytes(key))

    @classmethod
    def from_base64(cls, value: Optional[str]) -> "TokenCipher":
        if not value:
            raise ConfigurationError("ENCRYPTION_KEY environment variable is required")
        try:
            key = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError("ENCRYPTION_KEY must be base64 encoded") from exc
        return cls(key)

    def seal(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return SEPARATOR.join((nonce.hex(), tag.hex(), ciphertext.hex()))

    def open(self, envelope: str) -> str:
        if not isinstance(envelope, str) or not envelope:
            raise DecryptionError()
        # Cookie and URL layers may have percent-encoded the separators
        parts = unquote(envelope).split(SEPARATOR)
        if len(parts) != 3:
            raise DecryptionError()
        try:
            nonce = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError:
            raise DecryptionError() from None
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError()
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            raise DecryptionError() from None


def generate_key() -> str:
    """Return a fresh base64 encoded key suitable for ``ENCRYPTION_KEY``."""
    return base64.b64encode(os.urandom(KEY_BYTES)).decode("ascii")


__all__ = [
    "ConfigurationError",
    "DecryptionError",
    "TokenCipher",
    "generate_key",
]
