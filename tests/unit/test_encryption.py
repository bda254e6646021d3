"""
Test token encryption.
"""

import pytest
from cryptography.fernet import Fernet

from app.services.infrastructure.encryption_service import (
    EncryptionError,
    TokenCipher,
    generate_new_key,
    validate_encryption_config,
)

KEY = Fernet.generate_key().decode("utf-8")


def test_basic_encryption_decryption():
    cipher = TokenCipher(KEY)

    encrypted = cipher.encrypt("fake_oauth_token_12345")

    assert isinstance(encrypted, bytes)
    assert b"fake_oauth_token_12345" not in encrypted
    assert cipher.decrypt(encrypted) == "fake_oauth_token_12345"


def test_decrypt_accepts_memoryview_from_bytea_column():
    cipher = TokenCipher(KEY)
    encrypted = cipher.encrypt("ya29.token")

    assert cipher.decrypt(memoryview(encrypted)) == "ya29.token"


def test_pair_without_refresh_token():
    cipher = TokenCipher(KEY)

    encrypted_access, encrypted_refresh = cipher.encrypt_pair("access")

    assert encrypted_refresh is None
    assert cipher.decrypt_pair(encrypted_access, encrypted_refresh) == ("access", None)


def test_wrong_key_cannot_decrypt():
    encrypted = TokenCipher(KEY).encrypt("secret")

    with pytest.raises(EncryptionError):
        TokenCipher(generate_new_key()).decrypt(encrypted)


def test_empty_token_is_rejected():
    with pytest.raises(EncryptionError):
        TokenCipher(KEY).encrypt("")


def test_invalid_key_is_rejected():
    with pytest.raises(EncryptionError):
        TokenCipher("not-a-fernet-key")


def test_encryption_config_validation():
    assert validate_encryption_config(KEY) is True
    assert validate_encryption_config("not-a-fernet-key") is False
