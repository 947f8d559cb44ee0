"""Tests for encryption of stored credentials."""

from __future__ import annotations

import pytest

from coordinator.exceptions import InternalServerError
from coordinator.services.crypto_service import decrypt_value, encrypt_value


class TestCryptoService:
    def test_encrypt_decrypt_roundtrip(self) -> None:
        secret = "my-app-secret"
        plaintext = "spaces-secret-access-key"
        ciphertext = encrypt_value(plaintext, secret)
        assert ciphertext != plaintext
        assert decrypt_value(ciphertext, secret) == plaintext

    def test_decrypt_with_rotated_key_raises(self) -> None:
        ciphertext = encrypt_value("secret data", "correct-key")
        with pytest.raises(InternalServerError, match="SECRET_KEY rotated"):
            decrypt_value(ciphertext, "wrong-key")

    def test_decrypt_garbage_raises(self) -> None:
        with pytest.raises(InternalServerError):
            decrypt_value("not-valid-ciphertext", "any-key")

    def test_random_iv(self) -> None:
        ct1 = encrypt_value("test", "same-key")
        ct2 = encrypt_value("test", "same-key")
        assert ct1 != ct2
        assert decrypt_value(ct1, "same-key") == "test"
        assert decrypt_value(ct2, "same-key") == "test"
