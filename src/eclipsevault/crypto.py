"""
Password-based encryption envelope for backups.

The envelope is self-describing JSON; nothing needs to be stored besides
the password the user remembers:

    {version: 1, algorithm: "AES-GCM", kdf: "PBKDF2-SHA256",
     iterations: 120000, salt, iv, cipherText, createdAt}

Key derivation: PBKDF2-HMAC-SHA256, 120,000 iterations, 16-byte salt,
256-bit key. Cipher: AES-256-GCM with a 12-byte IV; the 16-byte tag is
appended to ``cipherText``. Binary fields are base64url without padding.

Keys are derived per call and never cached.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import time
from typing import Literal, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from . import EclipseVaultError

logger = logging.getLogger("eclipsevault.crypto")

ENCRYPTION_VERSION = 1
PBKDF2_ITERATIONS = 120_000
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12

ALGORITHM_TAG = "AES-GCM"
KDF_TAG = "PBKDF2-SHA256"

ENCRYPTED_FILE_SUFFIX = ".enc.json"


class PasswordRequired(EclipseVaultError):
    """Raised when encryption or decryption is attempted without a password."""


class InvalidEncryptedPayload(EclipseVaultError):
    """Raised when an encrypted envelope is missing fields or has wrong tags."""


class UnsupportedIterationCount(EclipseVaultError):
    """Raised when an envelope was derived with a different iteration count."""


class DecryptionFailed(EclipseVaultError):
    """Raised for any decryption failure.

    Deliberately the same error for a wrong password and for tampered
    or corrupted ciphertext.
    """


class EncryptedPayload(BaseModel):
    """Wire form of an encrypted backup."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: Literal[1] = ENCRYPTION_VERSION
    algorithm: Literal["AES-GCM"] = ALGORITHM_TAG
    kdf: Literal["PBKDF2-SHA256"] = KDF_TAG
    iterations: int = PBKDF2_ITERATIONS
    salt: str
    iv: str
    cipher_text: str
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def b64url_encode(data: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Inverse of :func:`b64url_encode`; tolerates missing padding."""
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _derive_key(password: str, salt: bytes) -> bytes:
    """Derive the AES-256 key with PBKDF2-HMAC-SHA256.

    Args:
        password: User password.
        salt: Random per-envelope salt.

    Returns:
        32 bytes of key material.
    """
    if not password or not password.strip():
        raise PasswordRequired("Password is required")

    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt(plain_text: str, password: str) -> EncryptedPayload:
    """Encrypt a JSON (or any text) payload under a password.

    Args:
        plain_text: Text to protect.
        password: Non-empty password.

    Returns:
        EncryptedPayload ready to serialize.

    Raises:
        PasswordRequired: If the password is empty.
    """
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(password, salt)

    cipher_text = AESGCM(key).encrypt(iv, plain_text.encode("utf-8"), None)

    return EncryptedPayload(
        salt=b64url_encode(salt),
        iv=b64url_encode(iv),
        cipher_text=b64url_encode(cipher_text),
    )


def encrypt_json(plain_text: str, password: str) -> str:
    """Encrypt and serialize in one step."""
    return encrypt(plain_text, password).to_json()


def parse_payload(content: Union[str, bytes, dict]) -> EncryptedPayload:
    """Parse and structurally validate an encrypted envelope.

    Args:
        content: JSON text/bytes or an already-decoded dict.

    Returns:
        The validated payload.

    Raises:
        InvalidEncryptedPayload: Not JSON, not an object, or wrong fields/tags.
    """
    if isinstance(content, dict):
        data = content
    else:
        try:
            data = json.loads(content)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidEncryptedPayload("Encrypted payload is not valid JSON") from exc

    if not isinstance(data, dict):
        raise InvalidEncryptedPayload("Encrypted payload is invalid")

    try:
        return EncryptedPayload.model_validate(data)
    except ValidationError as exc:
        raise InvalidEncryptedPayload("Encrypted payload structure is invalid") from exc


def looks_encrypted(data: object) -> bool:
    """Cheap check whether a decoded JSON value is an encrypted envelope."""
    return (
        isinstance(data, dict)
        and data.get("algorithm") == ALGORITHM_TAG
        and data.get("kdf") == KDF_TAG
        and "cipherText" in data
    )


def decrypt(payload: Union[EncryptedPayload, str, bytes, dict], password: str) -> str:
    """Decrypt an envelope back to its plain text.

    Args:
        payload: EncryptedPayload or its JSON form.
        password: The password used at encryption time.

    Returns:
        The original text.

    Raises:
        InvalidEncryptedPayload: Structurally invalid envelope.
        UnsupportedIterationCount: Iteration count is not 120,000.
        PasswordRequired: Empty password.
        DecryptionFailed: Wrong password or corrupted ciphertext.
    """
    if not isinstance(payload, EncryptedPayload):
        payload = parse_payload(payload)

    if payload.iterations != PBKDF2_ITERATIONS:
        raise UnsupportedIterationCount(
            f"Unsupported encryption iterations: {payload.iterations}"
        )

    try:
        salt = b64url_decode(payload.salt)
        iv = b64url_decode(payload.iv)
        cipher_text = b64url_decode(payload.cipher_text)
    except ValueError:
        raise DecryptionFailed("Failed to decrypt backup payload") from None

    key = _derive_key(password, salt)

    try:
        plain = AESGCM(key).decrypt(iv, cipher_text, None)
        return plain.decode("utf-8")
    except (InvalidTag, ValueError):
        logger.debug("AES-GCM decryption rejected the payload")
        raise DecryptionFailed("Failed to decrypt backup payload") from None
