"""
Token encryption for ProviderConnection rows.

Access and refresh tokens are stored Fernet-encrypted (ENCRYPTION_KEY).
Without a key in development the helpers pass values through unchanged.
"""

import logging
from cryptography.fernet import Fernet, InvalidToken
from adpulse.config import get_settings

logger = logging.getLogger(__name__)

_cipher: Fernet | None = None
_plaintext_warned = False


def _cipher_or_none() -> Fernet | None:
    global _cipher, _plaintext_warned
    if _cipher is not None:
        return _cipher

    settings = get_settings()
    if not settings.encryption_key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _plaintext_warned:
            logger.warning("ENCRYPTION_KEY not set: provider tokens are stored in plaintext (dev only).")
            _plaintext_warned = True
        return None

    try:
        _cipher = Fernet(settings.encryption_key.encode())
    except (ValueError, TypeError) as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
    return _cipher


def reset_cipher() -> None:
    """Forget the cached cipher (after the settings cache is cleared)."""
    global _cipher, _plaintext_warned
    _cipher = None
    _plaintext_warned = False


def encrypt_token(token: str | None) -> str | None:
    if token is None:
        return None
    cipher = _cipher_or_none()
    if cipher is None:
        return token
    return cipher.encrypt(token.encode()).decode()


def decrypt_token(stored: str | None) -> str | None:
    """Decrypt a stored token. Values written before a key existed are returned as-is."""
    if stored is None:
        return None
    cipher = _cipher_or_none()
    if cipher is None:
        return stored
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken:
        logger.warning("Stored token is not Fernet ciphertext; using it as plaintext.")
        return stored


def mask_token(stored: str | None) -> str | None:
    """Last 4 characters of the decrypted token, for API responses."""
    plain = decrypt_token(stored)
    if not plain:
        return None
    return f"…{plain[-4:]}" if len(plain) > 4 else "…"
