"""Field-level AES-256-GCM encryption for sensitive child and behavior notes.

Encrypts allowlisted fields before storage and decrypts on read. Whole
records are never encrypted, so non-sensitive columns stay filterable.
Uses 12-byte random nonces (96-bit, NIST recommended for GCM).

Stored format: "enc_v1:" + base64(nonce || ciphertext || tag).

Anything without the "enc_" marker is returned unchanged by decrypt, so
rows written before encryption was enabled keep working. Values written
by the legacy reversible encoding ("enc_" + base64 of the UTF-8 text)
still decode, but are never produced.

Usage:
    from src.security.encryption import field_encryptor

    encrypted = field_encryptor.encrypt("Bit a peer during circle time")
    plaintext = field_encryptor.decrypt(encrypted)
    row = field_encryptor.encrypt_record("behavior_log", row)
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.config import settings

logger = logging.getLogger(__name__)

MARKER = "enc_"
_V1_PREFIX = "enc_v1:"

# Fields that MUST be encrypted at rest, per entity type
SENSITIVE_FIELDS: dict[str, frozenset[str]] = {
    "behavior_log": frozenset({
        "behavior_description",
        "developmental_notes",
        "reflection_notes",
    }),
    "child_profile": frozenset({
        "developmental_notes",
        "family_context",
        "medical_notes",
    }),
}

# Audited resource types whose value snapshots carry an entity's fields
RESOURCE_ENTITIES: dict[str, str] = {
    "behavior_logs": "behavior_log",
    "children": "child_profile",
    "child_profile": "child_profile",
}

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM
_TAG_SIZE = 16


class EncryptionError(Exception):
    """A marked value could not be decrypted (corrupt, tampered, or wrong key)."""


def entity_for_resource(resource_type: str) -> str | None:
    return RESOURCE_ENTITIES.get(resource_type)


def is_encrypted(value: str) -> bool:
    """True for enc_v1 tokens and for legacy values that actually decode.

    Plain text that merely starts with "enc_" is not treated as encrypted.
    """
    if value.startswith(_V1_PREFIX):
        return True
    if not value.startswith(MARKER):
        return False
    try:
        _decode_legacy(value[len(MARKER):])
    except EncryptionError:
        return False
    return True


class FieldEncryptor:
    """AES-256-GCM encryptor for individual fields.

    Thread-safe and stateless (each encrypt call generates a fresh nonce).
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            msg = f"AES-256 requires a 32-byte key, got {len(key)} bytes"
            raise ValueError(msg)
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string field. Returns the marked, base64-encoded token."""
        nonce = os.urandom(_NONCE_SIZE)
        ct = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return _V1_PREFIX + base64.b64encode(nonce + ct).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a marked token; unmarked text is returned as-is."""
        if token.startswith(_V1_PREFIX):
            return self._decrypt_v1(token[len(_V1_PREFIX):])
        if token.startswith(MARKER):
            return _decode_legacy(token[len(MARKER):])
        return token

    def is_sealed(self, value: str) -> bool:
        """True only for an enc_v1 token this key can open."""
        if not value.startswith(_V1_PREFIX):
            return False
        try:
            self._decrypt_v1(value[len(_V1_PREFIX):])
        except EncryptionError:
            return False
        return True

    def _decrypt_v1(self, payload: str) -> str:
        try:
            raw = base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            msg = "Invalid encrypted token: not base64"
            raise EncryptionError(msg) from exc
        if len(raw) < _NONCE_SIZE + _TAG_SIZE:
            msg = "Invalid encrypted token: too short"
            raise EncryptionError(msg)
        nonce = raw[:_NONCE_SIZE]
        ct = raw[_NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ct, None).decode("utf-8")
        except InvalidTag as exc:
            msg = "Invalid encrypted token: authentication failed"
            raise EncryptionError(msg) from exc

    def should_encrypt(self, entity: str, field_name: str) -> bool:
        """Check if a field of the given entity type requires encryption."""
        return field_name in SENSITIVE_FIELDS.get(entity, frozenset())

    def encrypt_record(self, entity: str, data: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of `data` with the entity's sensitive fields encrypted.

        Empty and non-string values are left alone, and so are values already
        sealed with this key. Anything else, including text that only looks
        like a token, is encrypted.
        """
        result = dict(data)
        for field_name in SENSITIVE_FIELDS.get(entity, frozenset()):
            value = result.get(field_name)
            if isinstance(value, str) and value and not self.is_sealed(value):
                result[field_name] = self.encrypt(value)
        return result

    def decrypt_record(self, entity: str, data: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of `data` with the entity's sensitive fields decrypted."""
        result = dict(data)
        for field_name in SENSITIVE_FIELDS.get(entity, frozenset()):
            value = result.get(field_name)
            if isinstance(value, str) and value:
                result[field_name] = self.decrypt(value)
        return result


def _decode_legacy(payload: str) -> str:
    try:
        return base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        msg = "Invalid legacy encrypted value"
        raise EncryptionError(msg) from exc


_KEY_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[A-Z]"), "Encryption key must contain uppercase letters"),
    (re.compile(r"[a-z]"), "Encryption key must contain lowercase letters"),
    (re.compile(r"[0-9]"), "Encryption key must contain numbers"),
    (re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]"), "Encryption key must contain special characters"),
]


def validate_encryption_key(key: str) -> tuple[bool, list[str]]:
    """Check a passphrase-style key against the minimum strength rules."""
    errors: list[str] = []
    if len(key) < 32:
        errors.append("Encryption key must be at least 32 characters")
    for pattern, message in _KEY_RULES:
        if not pattern.search(key):
            errors.append(message)
    return not errors, errors


def _load_key() -> bytes:
    """Load the encryption key from settings (base64-encoded)."""
    raw = settings.security.encryption_key
    if not raw:
        if settings.is_production:
            msg = "ENCRYPTION_KEY must be set in production"
            raise RuntimeError(msg)
        logger.warning("ENCRYPTION_KEY not set — using a random ephemeral key (data won't survive restarts)")
        return os.urandom(32)
    try:
        key = base64.b64decode(raw, validate=True)
    except binascii.Error:
        if settings.is_production:
            raise
        logger.warning("ENCRYPTION_KEY is not valid base64 — using a random ephemeral key")
        return os.urandom(32)
    if len(key) != 32:
        if settings.is_production:
            msg = f"ENCRYPTION_KEY decoded to {len(key)} bytes (expected 32)"
            raise RuntimeError(msg)
        logger.warning("ENCRYPTION_KEY decoded to %d bytes (expected 32) — using a random ephemeral key", len(key))
        return os.urandom(32)
    return key


# Module-level singleton — import this wherever encryption is needed.
field_encryptor = FieldEncryptor(_load_key())
