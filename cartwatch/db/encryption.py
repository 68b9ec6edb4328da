"""Cookie blob encryption.

Account cookies are stored as a Fernet-encrypted JSON array. Older rows
hold the plain JSON array, so parsing tries JSON first and only then
decrypts.
"""

import base64
import json
import logging
import os
from typing import Any

from cryptography.fernet import Fernet

from cartwatch import metrics

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """
    Get encryption key from environment variable.

    Returns:
        Encryption key as bytes
    """
    key_str = os.getenv("ENCRYPTION_KEY")
    if not key_str:
        # Development only; blobs written with a temporary key are unreadable after restart
        logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production)")
        return Fernet.generate_key()

    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return base64.urlsafe_b64encode(key_bytes)
        return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])
    except Exception:
        return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


def encrypt_value(value: str, key: bytes | None = None) -> str:
    """
    Encrypt a value for storage.

    Args:
        value: Plaintext value to encrypt
        key: Optional Fernet key (defaults to ENCRYPTION_KEY)

    Returns:
        Encrypted value as base64 string
    """
    if not value:
        return value

    fernet = Fernet(key or get_encryption_key())
    encrypted = fernet.encrypt(value.encode())
    return base64.urlsafe_b64encode(encrypted).decode()


def decrypt_value(value: str, key: bytes | None = None) -> str | None:
    """
    Decrypt a value from storage.

    Returns:
        Decrypted plaintext value or None on failure
    """
    if not value:
        return value

    try:
        fernet = Fernet(key or get_encryption_key())
        encrypted = base64.urlsafe_b64decode(value.encode())
        return fernet.decrypt(encrypted).decode()
    except Exception as e:
        metrics.record_decryption_failure(type(e).__name__)
        logger.error(f"Decryption failed: {type(e).__name__}: {e} (value_length={len(value)})")
        return None


def encrypt_cookies(cookies: list[dict[str, Any]], key: bytes | None = None) -> str:
    return encrypt_value(json.dumps(cookies, ensure_ascii=False), key=key)


def parse_cookie_blob(blob: str | None, key: bytes | None = None) -> list[dict[str, Any]]:
    """Turn a stored cookie blob into a Playwright cookie list.

    Accepts a plain JSON array or the encrypted form. Returns an empty list
    when the blob is empty or unreadable.
    """
    if not blob:
        return []

    try:
        parsed = json.loads(blob)
        if isinstance(parsed, list):
            return parsed
    except (TypeError, ValueError):
        pass

    decrypted = decrypt_value(blob, key=key)
    if not decrypted:
        return []
    try:
        parsed = json.loads(decrypted)
    except ValueError as e:
        logger.warning(f"Decrypted cookie blob is not JSON: {e}")
        return []
    return parsed if isinstance(parsed, list) else []
