"""Tests for the password-based encryption envelope."""

from __future__ import annotations

import json

import pytest

from eclipsevault.crypto import (
    DecryptionFailed,
    EncryptedPayload,
    InvalidEncryptedPayload,
    PasswordRequired,
    UnsupportedIterationCount,
    b64url_decode,
    b64url_encode,
    decrypt,
    encrypt,
    encrypt_json,
    looks_encrypted,
    parse_payload,
)

PLAIN = json.dumps({"type": "eclipse-full-backup", "note": "ünïcödé"})


class TestEncryptDecrypt:
    """Round trips and envelope shape."""

    def test_round_trip(self) -> None:
        payload = encrypt(PLAIN, "correct horse")
        assert decrypt(payload, "correct horse") == PLAIN

    def test_round_trip_through_json(self) -> None:
        text = encrypt_json(PLAIN, "pw")
        assert decrypt(text, "pw") == PLAIN

    def test_wire_shape(self) -> None:
        wire = json.loads(encrypt(PLAIN, "pw").to_json())
        assert wire["version"] == 1
        assert wire["algorithm"] == "AES-GCM"
        assert wire["kdf"] == "PBKDF2-SHA256"
        assert wire["iterations"] == 120000
        assert set(wire) == {
            "version", "algorithm", "kdf", "iterations", "salt", "iv", "cipherText", "createdAt",
        }

    def test_binary_fields_are_unpadded_base64url(self) -> None:
        payload = encrypt(PLAIN, "pw")
        for value in (payload.salt, payload.iv, payload.cipher_text):
            assert "=" not in value and "+" not in value and "/" not in value
        assert len(b64url_decode(payload.salt)) == 16
        assert len(b64url_decode(payload.iv)) == 12

    def test_fresh_salt_and_iv_per_call(self) -> None:
        first, second = encrypt(PLAIN, "pw"), encrypt(PLAIN, "pw")
        assert first.salt != second.salt
        assert first.iv != second.iv
        assert first.cipher_text != second.cipher_text

    def test_looks_encrypted(self) -> None:
        assert looks_encrypted(json.loads(encrypt_json(PLAIN, "pw")))
        assert not looks_encrypted({"type": "eclipse-full-backup"})
        assert not looks_encrypted([1, 2])


class TestFailures:
    """Password, tamper, and structure failures."""

    def test_wrong_password(self) -> None:
        payload = encrypt(PLAIN, "right")
        with pytest.raises(DecryptionFailed):
            decrypt(payload, "wrong")

    def test_tampered_ciphertext_same_error(self) -> None:
        """Tampering is indistinguishable from a wrong password."""
        payload = encrypt(PLAIN, "pw")
        raw = bytearray(b64url_decode(payload.cipher_text))
        raw[0] ^= 0x01
        tampered = payload.model_copy(update={"cipher_text": b64url_encode(bytes(raw))})
        with pytest.raises(DecryptionFailed) as exc_info:
            decrypt(tampered, "pw")
        assert str(exc_info.value) == "Failed to decrypt backup payload"
        assert exc_info.value.__cause__ is None

    @pytest.mark.parametrize("password", ["", "   "])
    def test_empty_password_on_encrypt(self, password: str) -> None:
        with pytest.raises(PasswordRequired):
            encrypt(PLAIN, password)

    def test_empty_password_on_decrypt(self) -> None:
        payload = encrypt(PLAIN, "pw")
        with pytest.raises(PasswordRequired):
            decrypt(payload, "")

    def test_other_iteration_count_rejected(self) -> None:
        wire = json.loads(encrypt_json(PLAIN, "pw"))
        wire["iterations"] = 100_000
        with pytest.raises(UnsupportedIterationCount):
            decrypt(wire, "pw")

    @pytest.mark.parametrize("field,value", [
        ("algorithm", "AES-CBC"),
        ("kdf", "scrypt"),
        ("version", 2),
    ])
    def test_wrong_tags_rejected(self, field: str, value) -> None:
        wire = json.loads(encrypt_json(PLAIN, "pw"))
        wire[field] = value
        with pytest.raises(InvalidEncryptedPayload):
            parse_payload(wire)

    def test_missing_field_rejected(self) -> None:
        wire = json.loads(encrypt_json(PLAIN, "pw"))
        del wire["salt"]
        with pytest.raises(InvalidEncryptedPayload):
            decrypt(wire, "pw")

    def test_not_json_rejected(self) -> None:
        with pytest.raises(InvalidEncryptedPayload):
            parse_payload("not json")

    def test_parse_returns_model(self) -> None:
        assert isinstance(parse_payload(encrypt_json(PLAIN, "pw")), EncryptedPayload)
