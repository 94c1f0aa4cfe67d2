"""
Test credential encryption helpers.
"""

import pytest
from cryptography.fernet import Fernet

from app.security.encryption import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
    validate_encryption_config,
)


def test_basic_encryption_decryption():
    """Encrypted tokens are ASCII text that decrypts back to the original."""
    test_token = "fake_oauth_token_12345"

    encrypted = encrypt_token(test_token)

    assert encrypted != test_token
    assert encrypted.isascii()
    assert decrypt_token(encrypted) == test_token


def test_encryption_config_validation():
    assert validate_encryption_config() is True


def test_encryption_with_different_tokens():
    for token in ["simple_token", "token_with_special_chars_!@#$%^&*()", "ya29." + "x" * 200]:
        assert decrypt_token(encrypt_token(token)) == token


def test_empty_token_rejected():
    with pytest.raises(EncryptionError):
        encrypt_token("")


def test_corrupted_ciphertext_rejected():
    encrypted = encrypt_token("secret")
    with pytest.raises(EncryptionError):
        decrypt_token(encrypted[:-4] + "AAAA")


def test_missing_key_raises(monkeypatch):
    monkeypatch.setattr("app.security.encryption.settings.ENCRYPTION_KEY", None)
    with pytest.raises(EncryptionError):
        encrypt_token("secret")


def test_malformed_key_raises(monkeypatch):
    monkeypatch.setattr("app.security.encryption.settings.ENCRYPTION_KEY", "not-a-fernet-key")
    with pytest.raises(EncryptionError):
        encrypt_token("secret")


def test_module_exposes_no_key_generation():
    import app.security.encryption as encryption

    assert not hasattr(encryption, "generate_new_key")


def test_rotated_key_cannot_read_old_ciphertext(monkeypatch):
    encrypted = encrypt_token("secret")
    monkeypatch.setattr("app.security.encryption.settings.ENCRYPTION_KEY", Fernet.generate_key().decode())
    with pytest.raises(EncryptionError):
        decrypt_token(encrypted)
