"""Encryption of credentials kept in the config store."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from coordinator.exceptions import InternalServerError

# Separates config-secret keys from any other use of SECRET_KEY.
_KEY_CONTEXT = b"coordinator-config-secrets:"


def _fernet(secret_key: str) -> Fernet:
    digest = hashlib.sha256(_KEY_CONTEXT + secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_value(plaintext: str, secret_key: str) -> str:
    """Encrypt a credential and return URL-safe ciphertext."""
    return _fernet(secret_key).encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret_key: str) -> str:
    """Decrypt a stored credential.

    Raises InternalServerError when the ciphertext is corrupt or was written
    under a different SECRET_KEY.
    """
    try:
        return _fernet(secret_key).decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise InternalServerError(
            "Failed to decrypt stored credential; was SECRET_KEY rotated?"
        ) from exc
