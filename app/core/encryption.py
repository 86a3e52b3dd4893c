"""Encryption utilities for channel credentials at rest."""

import json

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings


_fernet: Fernet | None = None


def get_fernet() -> Fernet:
    """Get or create Fernet instance for encryption/decryption."""
    global _fernet
    if _fernet is None:
        if not settings.CHANNEL_ENCRYPTION_KEY:
            raise RuntimeError(
                "CHANNEL_ENCRYPTION_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _fernet = Fernet(settings.CHANNEL_ENCRYPTION_KEY.encode())
    return _fernet


def reset_fernet() -> None:
    """Drop the cached Fernet instance (after key rotation or in tests)."""
    global _fernet
    _fernet = None


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage."""
    if not token:
        return ""
    return get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token."""
    if not encrypted:
        return ""
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")


def encrypt_json(data: dict) -> str:
    """Encrypt a dict of secrets as a single Fernet token."""
    if not data:
        return ""
    return encrypt_token(json.dumps(data, sort_keys=True))


def decrypt_json(encrypted: str | None) -> dict:
    """Decrypt a dict of secrets stored with encrypt_json."""
    if not encrypted:
        return {}
    return json.loads(decrypt_token(encrypted))


def is_encryption_configured() -> bool:
    """Check if encryption is properly configured."""
    return bool(settings.CHANNEL_ENCRYPTION_KEY)
