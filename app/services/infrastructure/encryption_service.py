"""
Encryption for stored OAuth tokens.
Uses Fernet symmetric encryption; ciphertext is stored as BYTEA.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""


class TokenCipher:
    """Encrypts and decrypts token strings with one Fernet key."""

    def __init__(self, key: str | None = None):
        key = key or settings.ENCRYPTION_KEY
        if not key:
            raise EncryptionError("ENCRYPTION_KEY not configured in environment")
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except ValueError as e:
            logger.error("Failed to initialize Fernet cipher", error=str(e))
            raise EncryptionError(f"Invalid encryption key: {e}") from e

    def encrypt(self, token: str) -> bytes:
        if not token or not isinstance(token, str):
            raise EncryptionError("Token must be a non-empty string")
        return self._fernet.encrypt(token.encode("utf-8"))

    def decrypt(self, encrypted_token: bytes) -> str:
        if isinstance(encrypted_token, memoryview):
            encrypted_token = encrypted_token.tobytes()
        if not encrypted_token or not isinstance(encrypted_token, bytes):
            raise EncryptionError("Encrypted token must be non-empty bytes")
        try:
            return self._fernet.decrypt(encrypted_token).decode("utf-8")
        except InvalidToken as e:
            logger.error("Token decryption failed - invalid token")
            raise EncryptionError("Invalid or corrupted token") from e

    def encrypt_pair(
        self, access_token: str, refresh_token: str | None = None
    ) -> tuple[bytes, bytes | None]:
        """Encrypt an access/refresh token pair; the refresh token is optional."""
        encrypted_refresh = self.encrypt(refresh_token) if refresh_token else None
        return self.encrypt(access_token), encrypted_refresh

    def decrypt_pair(
        self, encrypted_access: bytes, encrypted_refresh: bytes | None = None
    ) -> tuple[str, str | None]:
        refresh_token = self.decrypt(encrypted_refresh) if encrypted_refresh else None
        return self.decrypt(encrypted_access), refresh_token


def validate_encryption_config(key: str | None = None) -> bool:
    """
    Validate that encryption is properly configured.

    Returns:
        bool: True if a round trip with the configured key succeeds
    """
    try:
        cipher = TokenCipher(key)
        sample = "encryption-check"
        is_valid = cipher.decrypt(cipher.encrypt(sample)) == sample
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False

    if not is_valid:
        logger.error("Encryption validation failed - data mismatch")
    return is_valid


def generate_new_key() -> str:
    """Generate a new Fernet key for ENCRYPTION_KEY (initial setup or rotation)."""
    return Fernet.generate_key().decode("utf-8")
