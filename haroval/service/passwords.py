from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError as HashVerificationError

from haroval.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "argon2id"


class CredentialVerifier:
    """Adaptive salted password hashing.

    Length policy belongs to the caller; this class hashes whatever it is
    given and answers yes or no on verification.
    """

    algorithm = ALGORITHM

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(
        self, secret: str, stored_hash: Optional[str], algo: Optional[str] = ALGORITHM
    ) -> bool:
        if not stored_hash or not isinstance(secret, str):
            return False
        if algo != ALGORITHM:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except (InvalidHash, HashVerificationError):
            return False

    def verify_dummy(self, secret: str) -> bool:
        """Spend one verification on a throwaway hash; always returns False."""
        try:
            self._hasher.verify(self._dummy_hash, secret or "")
        except (InvalidHash, HashVerificationError):
            pass
        return False


__all__ = ["ALGORITHM", "CredentialVerifier"]
