import pytest
from cryptography.fernet import Fernet

from quotasync.exceptions import SecretDecryptionError
from quotasync.services.credentials import CredentialVault


def test_round_trip(vault):
    token = vault.encrypt("MS0xLTEyMzQ-au2")

    assert token != "MS0xLTEyMzQ-au2"
    assert vault.decrypt(token) == "MS0xLTEyMzQ-au2"


def test_token_from_another_key_fails_closed(vault):
    other = CredentialVault(Fernet.generate_key())
    token = other.encrypt("secret")

    with pytest.raises(SecretDecryptionError):
        vault.decrypt(token)


@pytest.mark.parametrize("token", ["", "garbage", "gAAAAA-not-really"])
def test_malformed_tokens_fail_closed(vault, token):
    with pytest.raises(SecretDecryptionError):
        vault.decrypt(token)


@pytest.mark.parametrize("key", [None, "", "short-key"])
def test_missing_or_malformed_key(key):
    with pytest.raises(SecretDecryptionError):
        CredentialVault(key)


def test_decryption_errors_are_fatal():
    assert SecretDecryptionError.fatal is True


def test_encrypt_rejects_empty_secret(vault):
    with pytest.raises(ValueError):
        vault.encrypt("")
