"""Tests for HS256 compact token signing and verification."""

import base64
import json

import pytest

from haroval.service.tokens import (
    AccessClaims,
    RefreshClaims,
    TokenCodec,
    VerificationError,
)

SECRET = "codec-test-secret-with-enough-entropy-1234567890"
DAY = 24 * 60 * 60


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, "haroval", "haroval-users", clock=clock)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestSigning:
    def test_compact_structure(self, codec):
        token = codec.sign(codec.access_claims("42", "alice"))
        header_b64, payload_b64, sig_b64 = token.split(".")
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))
        assert header == {"alg": "HS256", "typ": "JWT"}
        assert "=" not in token

    def test_claim_names(self, codec, clock):
        payload = _payload(codec.sign(codec.access_claims("42", "alice")))
        assert payload["sub"] == "42"
        assert payload["username"] == "alice"
        assert payload["token_type"] == "access"
        assert payload["iss"] == "haroval"
        assert payload["aud"] == "haroval-users"
        assert payload["iat"] == int(clock.now)
        assert payload["exp"] == int(clock.now) + 7 * DAY

    def test_refresh_claims_have_no_username(self, codec, clock):
        payload = _payload(codec.sign(codec.refresh_claims("42")))
        assert "username" not in payload
        assert payload["token_type"] == "refresh"
        assert payload["exp"] == int(clock.now) + 30 * DAY


class TestVerification:
    def test_access_round_trip(self, codec):
        claims = codec.access_claims("42", "alice")
        verified = codec.verify_access(codec.sign(claims))
        assert isinstance(verified, AccessClaims)
        assert verified == claims

    def test_refresh_round_trip(self, codec):
        claims = codec.refresh_claims("42")
        verified = codec.verify_refresh(codec.sign(claims))
        assert isinstance(verified, RefreshClaims)
        assert verified.user_id == "42"

    def test_expired_token_rejected(self, codec, clock):
        token = codec.sign(codec.access_claims("42", "alice"))
        clock.advance(7 * DAY + 1)
        with pytest.raises(VerificationError):
            codec.verify_access(token)

    def test_token_valid_just_before_expiry(self, codec, clock):
        token = codec.sign(codec.access_claims("42", "alice"))
        clock.advance(7 * DAY - 1)
        assert codec.verify_access(token).user_id == "42"

    def test_leeway_extends_acceptance(self, clock):
        codec = TokenCodec(SECRET, "haroval", "haroval-users", clock=clock, leeway_seconds=60)
        token = codec.sign(codec.access_claims("42", "alice"))
        clock.advance(7 * DAY + 30)
        assert codec.verify_access(token).username == "alice"

    def test_past_expiry_with_valid_signature_rejected(self, codec, clock):
        claims = AccessClaims(
            user_id="42",
            username="alice",
            issued_at=int(clock.now) - 2 * DAY,
            expires_at=int(clock.now) - DAY,
            issuer="haroval",
            audience="haroval-users",
        )
        with pytest.raises(VerificationError):
            codec.verify_access(codec.sign(claims))

    def test_refresh_token_rejected_as_access(self, codec):
        token = codec.sign(codec.refresh_claims("u1"))
        with pytest.raises(VerificationError):
            codec.verify_access(token)

    def test_access_token_rejected_as_refresh(self, codec):
        token = codec.sign(codec.access_claims("u1", "alice"))
        with pytest.raises(VerificationError):
            codec.verify_refresh(token)

    def test_wrong_secret_rejected(self, codec, clock):
        other = TokenCodec("another-secret", "haroval", "haroval-users", clock=clock)
        with pytest.raises(VerificationError):
            codec.verify_access(other.sign(other.access_claims("42", "alice")))

    @pytest.mark.parametrize("issuer,audience", [("evil", "haroval-users"), ("haroval", "other")])
    def test_issuer_and_audience_enforced(self, codec, clock, issuer, audience):
        foreign = TokenCodec(SECRET, issuer, audience, clock=clock)
        with pytest.raises(VerificationError):
            codec.verify_access(foreign.sign(foreign.access_claims("42", "alice")))

    def test_audience_list_accepted(self, codec, clock):
        header = _segment({"alg": "HS256", "typ": "JWT"})
        payload = _segment(
            {
                "sub": "42",
                "username": "alice",
                "token_type": "access",
                "iat": int(clock.now),
                "exp": int(clock.now) + 60,
                "iss": "haroval",
                "aud": ["other", "haroval-users"],
            }
        )
        signing_input = f"{header}.{payload}"
        token = f"{signing_input}.{codec._signature(signing_input)}"
        assert codec.verify_access(token).user_id == "42"

    def test_none_algorithm_rejected(self, codec):
        token = codec.sign(codec.access_claims("42", "alice"))
        _, payload, _ = token.split(".")
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        with pytest.raises(VerificationError):
            codec.verify_access(forged)

    def test_tampered_payload_rejected(self, codec):
        token = codec.sign(codec.access_claims("42", "alice"))
        header, _, signature = token.split(".")
        forged_payload = _payload(token) | {"sub": "1"}
        with pytest.raises(VerificationError):
            codec.verify_access(f"{header}.{_segment(forged_payload)}.{signature}")

    @pytest.mark.parametrize("token", ["", "a.b", "a.b.c.d", "!!!.###.$$$"])
    def test_garbage_rejected(self, codec, token):
        with pytest.raises(VerificationError):
            codec.verify_access(token)

    def test_failures_are_indistinguishable(self, codec, clock):
        expired = codec.sign(codec.access_claims("42", "alice"))
        clock.advance(8 * DAY)
        fresh_wrong_kind = codec.sign(codec.refresh_claims("42"))
        messages = set()
        for token in (expired, fresh_wrong_kind, "a.b.c"):
            with pytest.raises(VerificationError) as excinfo:
                codec.verify_access(token)
            messages.add(str(excinfo.value))
        assert len(messages) == 1
