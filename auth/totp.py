"""
auth/totp.py -- Second-factor (TOTP) verification.

The secret is stored encrypted on the account row. It is decrypted inside
verify() and the plaintext is dropped as soon as the code check returns --
it is never attached to the Account, the principal, or a log event.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import pyotp

from auth.crypto import SecretBox
from auth.errors import SecretDecryptionError
from auth.models import Account

logger = logging.getLogger("gatehouse.auth")

CodeVerifier = Callable[[str, str], bool]


def normalize_code(code: str | None) -> str:
    return "".join((code or "").split())


def verify_one_time_code(secret: str, code: str) -> bool:
    """Check a 6-digit TOTP code, accepting one step of clock drift either way."""
    code = normalize_code(code)
    if len(code) != 6 or not code.isdigit():
        return False
    try:
        return pyotp.TOTP(secret).verify(code, valid_window=1)
    except (TypeError, ValueError):
        # Not a valid base32 secret.
        return False


class SecondFactorVerifier:
    def __init__(self, box: SecretBox, verify_code: CodeVerifier = verify_one_time_code) -> None:
        self._box = box
        self._verify_code = verify_code

    def required(self, account: Account) -> bool:
        return account.two_factor_enabled

    def verify(self, encrypted_secret: str | None, code: str) -> bool:
        if not encrypted_secret:
            return False
        try:
            secret = self._box.decrypt(encrypted_secret)
        except SecretDecryptionError:
            logger.error("Two-factor secret could not be decrypted; treating code as invalid")
            return False
        try:
            return self._verify_code(secret, code)
        finally:
            del secret
