"""
auth/errors.py -- Exceptions for conditions the login path cannot decide on.

Expected login failures (wrong password, lockout, ...) are LoginFailure
values, not exceptions. These classes cover the genuinely unexpected:
an unreachable credential store or a corrupt secret envelope.
"""


class GatehouseError(Exception):
    """Base class for errors raised by the auth package."""


class CredentialStoreError(GatehouseError):
    """The credential store could not be read or written."""


class SecretDecryptionError(GatehouseError):
    """A stored two-factor secret could not be decrypted."""
