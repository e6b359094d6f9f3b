"""Symmetric encryption for stored portal secrets.

Secrets are encrypted with Fernet (AES-128-CBC + HMAC) using a key derived
from ``RATEWATCH_SECRET_KEY``. Plaintext is only handed out through
:meth:`CredentialCipher.revealed`, which scopes it to a ``with`` block.
"""

from __future__ import annotations

import base64
import os
from contextlib import contextmanager
from typing import Iterator

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ratewatch.errors import ConfigError, CredentialError
from ratewatch.logging_config import get_logger

LOGGER = get_logger(__name__)

_KDF_SALT = b"ratewatch_portal_credentials_v1"
_KDF_ITERATIONS = 100_000


def _derive_key(secret_key: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))


class CredentialCipher:
    """Encrypt and decrypt portal passwords."""

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ConfigError("RATEWATCH_SECRET_KEY is not set")
        self._fernet = Fernet(_derive_key(secret_key))

    @classmethod
    def from_env(cls) -> "CredentialCipher":
        return cls(os.getenv("RATEWATCH_SECRET_KEY", ""))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise CredentialError("Refusing to store an empty secret")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, AttributeError) as exc:
            LOGGER.error("Secret decryption failed (wrong key or corrupted data)")
            raise CredentialError() from exc

    @contextmanager
    def revealed(self, token: str) -> Iterator[str]:
        """Yield the decrypted secret for the duration of the block."""

        plaintext = self.decrypt(token)
        try:
            yield plaintext
        finally:
            del plaintext
