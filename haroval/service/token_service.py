from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from haroval.config import Settings
from haroval.logging import get_logger
from haroval.service.cipher import DecryptionError, TokenCipher
from haroval.service.tokens import TokenCodec, VerificationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessIdentity:
    user_id: str
    username: str


@dataclass(frozen=True)
class RefreshIdentity:
    user_id: str


class EncryptedTokenService:
    """Issue and redeem encrypted token envelopes.

    Issuing signs the claims first and then seals the whole compact token.
    Redeeming reverses that order. Callers only ever handle envelopes; a
    failure at either stage comes back as ``None``.
    """

    def __init__(self, cipher: TokenCipher, codec: TokenCodec) -> None:
        self._cipher = cipher
        self._codec = codec

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "EncryptedTokenService":
        cipher = TokenCipher.from_base64(settings.encryption_key)
        codec = TokenCodec(
            settings.jwt_secret,
            settings.jwt_issuer,
            settings.jwt_audience,
            access_ttl_days=settings.access_token_ttl_days,
            refresh_ttl_days=settings.refresh_token_ttl_days,
            clock=clock,
        )
        return cls(cipher, codec)

    def issue_access(self, user_id: str, username: str) -> str:
        token = self._codec.sign(self._codec.access_claims(user_id, username))
        return self._cipher.seal(token)

    def issue_refresh(self, user_id: str) -> str:
        token = self._codec.sign(self._codec.refresh_claims(user_id))
        return self._cipher.seal(token)

    def redeem_access(self, envelope: Optional[str]) -> Optional[AccessIdentity]:
        if not envelope:
            return None
        try:
            claims = self._codec.verify_access(self._cipher.open(envelope))
        except DecryptionError:
            logger.debug("access_envelope_rejected", stage="decrypt")
            return None
        except VerificationError:
            logger.debug("access_envelope_rejected", stage="verify")
            return None
        return AccessIdentity(user_id=claims.user_id, username=claims.username)

    def redeem_refresh(self, envelope: Optional[str]) -> Optional[RefreshIdentity]:
        if not envelope:
            return None
        try:
            claims = self._codec.verify_refresh(self._cipher.open(envelope))
        except DecryptionError:
            logger.debug("refresh_envelope_rejected", stage="decrypt")
            return None
        except VerificationError:
            logger.debug("refresh_envelope_rejected", stage="verify")
            return None
        return RefreshIdentity(user_id=claims.user_id)


__all__ = ["AccessIdentity", "RefreshIdentity", "EncryptedTokenService"]
