"""
auth/crypto.py -- At-rest encryption for two-factor secrets.

Envelope format (all parts base64):

    enc_v1:<iv>:<tag>:<ciphertext>

AES-256-GCM with a 12-byte random IV per value. The key comes from
PII_ENCRYPTION_KEY (32 bytes, base64). Values without the enc_v1 prefix are
treated as plaintext, which is what a development database without a key
contains.
"""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from auth.errors import SecretDecryptionError

ENCRYPTION_PREFIX = "enc_v1"
_IV_BYTES = 12
_TAG_BYTES = 16


def is_encrypted(value: str) -> bool:
    return value.startswith(f"{ENCRYPTION_PREFIX}:")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class SecretBox:
    """Encrypts and decrypts secret strings with a single AES-256-GCM key.

    key=None means encryption is not configured: encrypt() returns its input
    unchanged and decrypt() only accepts plaintext values.
    """

    def __init__(self, key: bytes | None) -> None:
        if key is not None and len(key) != 32:
            raise ValueError("encryption key must be 32 bytes")
        self._aead = AESGCM(key) if key is not None else None

    @classmethod
    def from_settings(cls, settings) -> SecretBox:
        raw = settings.pii_encryption_key
        return cls(base64.b64decode(raw) if raw else None)

    @property
    def enabled(self) -> bool:
        return self._aead is not None

    def encrypt(self, value: str) -> str:
        if self._aead is None or is_encrypted(value):
            return value
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead.encrypt(iv, value.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return ":".join([ENCRYPTION_PREFIX, _b64(iv), _b64(tag), _b64(ciphertext)])

    def decrypt(self, value: str) -> str:
        """Return the plaintext for an envelope (or a plaintext value as-is).

        Raises SecretDecryptionError when the envelope is malformed, the tag
        does not verify, or no key is configured for an encrypted value.
        """
        if not is_encrypted(value):
            return value
        if self._aead is None:
            raise SecretDecryptionError("encrypted secret found but no encryption key is configured")
        parts = value.split(":")
        if len(parts) != 4:
            raise SecretDecryptionError("malformed secret envelope")
        try:
            iv, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts[1:])
            plain = self._aead.decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as exc:
            raise SecretDecryptionError("secret envelope failed verification") from exc
        return plain.decode("utf-8")
