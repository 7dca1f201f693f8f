"""Symmetric encryption for provider credentials stored in the database.

Uses Fernet (AES-128-CBC + HMAC-SHA256) with a key derived from
CREDENTIALS_ENCRYPTION_KEY.
"""

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from payments_core.core.config import settings


def _derive_key(key: str) -> bytes:
    """Derive a Fernet-compatible key from the configuration key.

    Args:
        key: The raw encryption key string

    Returns:
        bytes: A 32-byte URL-safe base64-encoded key for Fernet
    """
    key_bytes = hashlib.sha256(key.encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


def get_fernet(key: Optional[str] = None) -> Fernet:
    """Get a Fernet instance for the given or configured key.

    Raises:
        ValueError: If no encryption key is configured
    """
    key = key or settings.CREDENTIALS_ENCRYPTION_KEY
    if not key:
        raise ValueError("CREDENTIALS_ENCRYPTION_KEY is not configured")
    return Fernet(_derive_key(key))


def encrypt_credential(plaintext: str, key: Optional[str] = None) -> str:
    """Encrypt a credential value.

    Raises:
        ValueError: If plaintext is empty
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty credential")
    return get_fernet(key).encrypt(plaintext.encode()).decode()


def decrypt_credential(ciphertext: str, key: Optional[str] = None) -> Optional[str]:
    """Decrypt a credential value.

    Returns:
        The plaintext, or None if the value is empty or was not produced by this key
    """
    if not ciphertext:
        return None
    try:
        return get_fernet(key).decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return None
