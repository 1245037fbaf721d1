"""
Encryption for carrier credentials and cached tokens

Uses Fernet (AES-128-CBC + HMAC) with ENCRYPTION_KEY, or a key derived from
SECRET_KEY via PBKDF2 when no explicit key is configured.

Carrier API credentials and bearer tokens must be encrypted at rest.
"""
import base64
import json
import logging
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from courierhub.core.config import settings

logger = logging.getLogger(__name__)

_ENCRYPTION_SALT = b"courierhub_carrier_credentials_v1"

# Cached Fernet instance
_fernet: Optional[Fernet] = None


def _get_fernet() -> Fernet:
    """Get or create Fernet instance."""
    global _fernet

    if _fernet is None:
        if settings.ENCRYPTION_KEY:
            _fernet = Fernet(settings.ENCRYPTION_KEY.encode())
        else:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=_ENCRYPTION_SALT,
                iterations=100000,
            )
            key = base64.urlsafe_b64encode(kdf.derive(settings.SECRET_KEY.encode()))
            _fernet = Fernet(key)

    return _fernet


def encrypt_value(plaintext: str) -> str:
    """
    Encrypt a string.

    Returns:
        Fernet token as str, or "" for empty input
    """
    if not plaintext:
        return ""

    try:
        return _get_fernet().encrypt(plaintext.encode()).decode()
    except Exception as e:
        logger.error(f"Encryption failed: {type(e).__name__}")
        raise ValueError("Failed to encrypt sensitive data")


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a string produced by encrypt_value."""
    if not ciphertext:
        return ""

    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
        raise ValueError("Failed to decrypt data - invalid token")


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    """Encrypt a credentials mapping as JSON."""
    return encrypt_value(json.dumps(credentials, sort_keys=True))


def decrypt_credentials(ciphertext: Optional[str]) -> Dict[str, Any]:
    """Decrypt a credentials mapping. Empty ciphertext yields {}."""
    if not ciphertext:
        return {}
    return json.loads(decrypt_value(ciphertext))


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Mask a secret for logs: 'abcdef123' -> '*****f123'."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
