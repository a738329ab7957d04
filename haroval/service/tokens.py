from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from haroval.logging import get_logger

logger = get_logger(__name__)

ACCESS_KIND = "access"
REFRESH_KIND = "refresh"
_HEADER = {"alg": "HS256", "typ": "JWT"}
_DAY_SECONDS = 24 * 60 * 60


class VerificationError(Exception):
    """Opaque rejection of a compact token.

    Expiry, signature mismatch and issuer/audience mismatch all surface as
    this one exception with the same message.
    """

    def __init__(self) -> None:
        super().__init__("Token verification failed")


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    username: str
    issued_at: int
    expires_at: int
    issuer: str
    audience: str
    token_kind: str = ACCESS_KIND


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    issued_at: int
    expires_at: int
    issuer: str
    audience: str
    token_kind: str = REFRESH_KIND


Claims = Union[AccessClaims, RefreshClaims]


class TokenCodec:
    """HS256 compact token signing and verification.

    The codec only knows about claims; it never sees envelopes. Issuer and
    audience are fixed per codec and checked on every verification.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        *,
        access_ttl_days: int = 7,
        refresh_ttl_days: int = 30,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_days * _DAY_SECONDS
        self.refresh_ttl_seconds = refresh_ttl_days * _DAY_SECONDS
        self._clock = clock
        self._leeway = leeway_seconds

    def now(self) -> int:
        return int(self._clock())

    def access_claims(self, user_id: str, username: str) -> AccessClaims:
        issued = self.now()
        return AccessClaims(
            user_id=str(user_id),
            username=username,
            issued_at=issued,
            expires_at=issued + self.access_ttl_seconds,
            issuer=self.issuer,
            audience=self.audience,
        )

    def refresh_claims(self, user_id: str) -> RefreshClaims:
        issued = self.now()
        return RefreshClaims(
            user_id=str(user_id),
            issued_at=issued,
            expires_at=issued + self.refresh_ttl_seconds,
            issuer=self.issuer,
            audience=self.audience,
        )

    def sign(self, claims: Claims) -> str:
        payload: dict[str, Any] = {
            "sub": claims.user_id,
            "token_type": claims.token_kind,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "iss": claims.issuer,
            "aud": claims.audience,
        }
        if isinstance(claims, AccessClaims):
            payload["username"] = claims.username
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._verified_payload(token, ACCESS_KIND)
        username = payload.get("username")
        if not isinstance(username, str) or not username:
            raise VerificationError()
        return AccessClaims(
            user_id=payload["sub"],
            username=username,
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            issuer=payload["iss"],
            audience=self.audience,
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._verified_payload(token, REFRESH_KIND)
        return RefreshClaims(
            user_id=payload["sub"],
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            issuer=payload["iss"],
            audience=self.audience,
        )

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _verified_payload(self, token: str, expected_kind: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise VerificationError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise VerificationError() from None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise VerificationError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise VerificationError()

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise VerificationError()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise VerificationError() from None
        if not isinstance(payload, dict):
            raise VerificationError()

        if payload.get("iss") != self.issuer:
            raise VerificationError()
        if not _audience_matches(payload.get("aud"), self.audience):
            raise VerificationError()
        exp = _as_number(payload.get("exp"))
        if exp is None or exp <= self._clock() - self._leeway:
            raise VerificationError()
        if _as_number(payload.get("iat")) is None:
            raise VerificationError()
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise VerificationError()
        if payload.get("token_type") != expected_kind:
            raise VerificationError()
        return payload


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _audience_matches(aud: Any, expected: str) -> bool:
    if isinstance(aud, str):
        return aud == expected
    if isinstance(aud, list):
        return expected in aud
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


__all__ = [
    "ACCESS_KIND",
    "REFRESH_KIND",
    "AccessClaims",
    "RefreshClaims",
    "TokenCodec",
    "VerificationError",
]
