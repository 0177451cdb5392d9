"""Fernet encryption for purchase tokens kept for consumption recovery."""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from creditmeter.core.config import get_settings
from creditmeter.core.exceptions import FailedPreconditionError


def _get_fernet() -> Fernet:
    settings = get_settings()
    key = settings.token_encryption_key
    if not key or (isinstance(key, str) and len(key) != 44):
        # Derive from secret_key for dev when TOKEN_ENCRYPTION_KEY not set
        secret = settings.secret_key.encode()
        digest = hashlib.sha256(secret).digest()
        key = base64.urlsafe_b64encode(digest).decode()
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except ValueError as e:
        raise FailedPreconditionError(f"Invalid encryption key: {e}") from e


def encrypt_token(plain: str) -> str:
    if not plain:
        return ""
    return _get_fernet().encrypt(plain.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    if not encrypted:
        return ""
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return ""
