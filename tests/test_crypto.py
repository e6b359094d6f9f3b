import pytest

from ratewatch.crypto import CredentialCipher
from ratewatch.errors import ConfigError, CredentialError


def test_encrypt_decrypt_roundtrip() -> None:
    cipher = CredentialCipher("unit-test-key")
    token = cipher.encrypt("s3cret!")
    assert token != "s3cret!"
    assert cipher.decrypt(token) == "s3cret!"


def test_revealed_yields_plaintext() -> None:
    cipher = CredentialCipher("unit-test-key")
    token = cipher.encrypt("hunter2")
    with cipher.revealed(token) as secret:
        assert secret == "hunter2"


def test_wrong_key_raises_credential_error() -> None:
    token = CredentialCipher("key-a").encrypt("value")
    with pytest.raises(CredentialError):
        CredentialCipher("key-b").decrypt(token)


def test_empty_values_rejected(monkeypatch) -> None:
    with pytest.raises(CredentialError):
        CredentialCipher("key").encrypt("")
    monkeypatch.delenv("RATEWATCH_SECRET_KEY", raising=False)
    with pytest.raises(ConfigError):
        CredentialCipher.from_env()
