"""
Token Encryption

Strava access and refresh tokens are stored Fernet-encrypted on the user
row. Only the credential store decrypts them, immediately before use.

A token that cannot be decrypted (rotated key, corrupt value) reads as
None, which the credential store treats as "not connected".
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from core.config import settings

logger = logging.getLogger(__name__)

_cipher: Optional[Fernet] = None


def build_cipher(key: Optional[str] = None) -> Fernet:
    """
    Fernet cipher for `key` (default TOKEN_ENCRYPTION_KEY).

    Outside production a missing key falls back to a throwaway one: tokens
    written with it are unreadable after a restart.
    """
    key = key or settings.TOKEN_ENCRYPTION_KEY
    if not key:
        if settings.ENVIRONMENT == "production":
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY must be set in production "
                "(generate one with cryptography.fernet.Fernet.generate_key())"
            )
        logger.warning("TOKEN_ENCRYPTION_KEY not set; using a temporary key, stored tokens will not survive a restart")
        key = Fernet.generate_key().decode()

    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid TOKEN_ENCRYPTION_KEY: {e}") from e


def _get_cipher() -> Fernet:
    global _cipher
    if _cipher is None:
        _cipher = build_cipher()
    return _cipher


def encrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return _get_cipher().encrypt(token.encode()).decode()


def decrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        return _get_cipher().decrypt(token.encode()).decode()
    except InvalidToken:
        logger.error("Strava token decryption failed: wrong key or corrupt value")
        return None
