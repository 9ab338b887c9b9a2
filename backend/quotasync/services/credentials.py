"""Encryption of stored PMS credential secrets.

Secrets are Fernet tokens at rest. Decryption fails closed: a token that does
not decrypt under the configured key raises ``SecretDecryptionError`` and the
sync invocation stops rather than continuing with a wrong or empty key.
"""

from __future__ import annotations

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from quotasync.config import settings
from quotasync.exceptions import SecretDecryptionError


class CredentialVault:
    """Encrypts and decrypts PMS API keys with a single Fernet key."""

    def __init__(self, key: str | bytes | None) -> None:
        if not key:
            raise SecretDecryptionError("No credential encryption key is configured")
        try:
            self._cipher = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise SecretDecryptionError("Credential encryption key is malformed") from exc

    def encrypt(self, secret: str) -> str:
        if not secret:
            raise ValueError("secret must be a non-empty string")
        return self._cipher.encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token:
            raise SecretDecryptionError("Stored credential secret is empty")
        try:
            secret = self._cipher.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise SecretDecryptionError("Stored credential secret could not be decrypted") from exc
        if not secret:
            raise SecretDecryptionError("Stored credential secret decrypted to an empty value")
        return secret


@lru_cache(maxsize=1)
def get_credential_vault() -> CredentialVault:
    """Vault built from CREDENTIAL_ENCRYPTION_KEY."""
    return CredentialVault(settings.credential_encryption_key)
