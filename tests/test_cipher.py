"""Tests for the AES-256-GCM token envelope cipher."""

import base64
import os
from urllib.parse import quote

import pytest

from haroval.service.cipher import (
    ConfigurationError,
    DecryptionError,
    TokenCipher,
    generate_key,
)


@pytest.fixture
def cipher():
    return TokenCipher(os.urandom(32))


def _flip_hex_char(segment: str, index: int = 0) -> str:
    replacement = "0" if segment[index] != "0" else "1"
    return segment[:index] + replacement + segment[index + 1:]


class TestSealAndOpen:
    def test_round_trip(self, cipher):
        assert cipher.open(cipher.seal("header.payload.signature")) == "header.payload.signature"

    def test_round_trip_unicode(self, cipher):
        assert cipher.open(cipher.seal("usér-ñame ✓")) == "usér-ñame ✓"

    def test_envelope_has_three_hex_segments(self, cipher):
        envelope = cipher.seal("hello")
        nonce, tag, ciphertext = envelope.split(":")
        assert len(bytes.fromhex(nonce)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("hello")

    def test_fresh_nonce_per_seal(self, cipher):
        first = cipher.seal("same plaintext")
        second = cipher.seal("same plaintext")
        assert first != second
        assert first.split(":")[0] != second.split(":")[0]

    def test_url_encoded_envelope_is_accepted(self, cipher):
        envelope = cipher.seal("cookie value")
        assert cipher.open(quote(envelope, safe="")) == "cookie value"


class TestTamperDetection:
    @pytest.mark.parametrize("segment_index", [0, 1, 2])
    def test_flipping_any_segment_fails(self, cipher, segment_index):
        parts = cipher.seal("signed-token").split(":")
        parts[segment_index] = _flip_hex_char(parts[segment_index])
        with pytest.raises(DecryptionError):
            cipher.open(":".join(parts))

    def test_wrong_key_fails(self, cipher):
        envelope = cipher.seal("secret")
        other = TokenCipher(os.urandom(32))
        with pytest.raises(DecryptionError):
            other.open(envelope)

    def test_two_segment_format_is_rejected(self, cipher):
        nonce, tag, ciphertext = cipher.seal("secret").split(":")
        with pytest.raises(DecryptionError):
            cipher.open(f"{nonce}:{tag + ciphertext}")

    @pytest.mark.parametrize(
        "envelope",
        ["", "not-an-envelope", "zz:zz:zz", "00:00:00", "a:b:c:d"],
    )
    def test_malformed_envelopes_fail(self, cipher, envelope):
        with pytest.raises(DecryptionError):
            cipher.open(envelope)

    def test_error_message_is_generic(self, cipher):
        with pytest.raises(DecryptionError) as excinfo:
            cipher.open("00:00:00")
        assert str(excinfo.value) == "Failed to decrypt token"


class TestKeyHandling:
    def test_short_key_rejected(self):
        with pytest.raises(ConfigurationError):
            TokenCipher(os.urandom(16))

    def test_from_base64_requires_value(self):
        with pytest.raises(ConfigurationError, match="ENCRYPTION_KEY"):
            TokenCipher.from_base64(None)

    def test_from_base64_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            TokenCipher.from_base64("not base64 at all!")

    def test_from_base64_rejects_wrong_length(self):
        with pytest.raises(ConfigurationError):
            TokenCipher.from_base64(base64.b64encode(os.urandom(24)).decode())

    def test_generate_key_is_usable(self):
        key = generate_key()
        assert len(base64.b64decode(key)) == 32
        cipher = TokenCipher.from_base64(key)
        assert cipher.open(cipher.seal("x")) == "x"


def _load_key_script():
    import importlib.util
    from pathlib import Path

    path = Path(__file__).resolve().parent.parent / "scripts" / "generate_encryption_key.py"
    location = importlib.util.spec_from_file_location("generate_encryption_key", path)
    module = importlib.util.module_from_spec(location)
    location.loader.exec_module(module)
    return module


def test_key_script_raw_output_is_usable(monkeypatch, capsys):
    script = _load_key_script()
    monkeypatch.setattr("sys.argv", ["generate_encryption_key.py", "--raw"])

    script.main()

    key = capsys.readouterr().out.strip()
    TokenCipher.from_base64(key)


def test_key_script_env_lines(monkeypatch, capsys):
    script = _load_key_script()
    monkeypatch.setattr("sys.argv", ["generate_encryption_key.py", "--with-jwt-secret"])

    script.main()

    out = capsys.readouterr().out
    assert "ENCRYPTION_KEY=" in out
    assert "JWT_SECRET=" in out
