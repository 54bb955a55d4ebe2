"""
encryption.py

Fernet helpers for credentials stored in the DB (service API keys, Trakt tokens).
The app key comes from MARQUEE_APP_KEY, a Docker secret, or a key file on disk;
if none is present a key is generated and written to the first writable path.
"""

import os
import base64
from functools import lru_cache
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken


APP_KEY_PATHS = [
    "/run/secrets/marquee_app_key",  # Docker secret
    "/app/data/.app_key",            # Container volume
    "data/.app_key"                  # Development fallback
]


class DecryptionError(Exception):
    """Raised when a stored value cannot be decrypted with the current app key."""
    pass


def _get_or_create_app_key() -> bytes:
    env_key = os.getenv("MARQUEE_APP_KEY")
    if env_key:
        return env_key.encode()

    for path in APP_KEY_PATHS:
        if os.path.exists(path):
            with open(path, 'rb') as f:
                return f.read().strip()

    key = Fernet.generate_key()
    for path in APP_KEY_PATHS[1:]:  # Docker secret path is read-only
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(key)
            os.chmod(path, 0o600)
            break
        except (OSError, PermissionError):
            continue
    return key


@lru_cache(maxsize=1)
def _fernet() -> Fernet:
    return Fernet(_get_or_create_app_key())


def encrypt(value: str) -> str:
    """Encrypt a string value."""
    encrypted = _fernet().encrypt(value.encode())
    return base64.b64encode(encrypted).decode()


def decrypt(value_encrypted: str) -> str:
    """Decrypt an encrypted string value; raises DecryptionError on a bad key or payload."""
    try:
        encrypted_bytes = base64.b64decode(value_encrypted.encode())
        return _fernet().decrypt(encrypted_bytes).decode()
    except (InvalidToken, ValueError) as e:
        raise DecryptionError(f"Unable to decrypt stored secret: {type(e).__name__}") from e


def encrypt_optional(value: Optional[str]) -> Optional[str]:
    return encrypt(value) if value else None


def decrypt_optional(value_encrypted: Optional[str]) -> Optional[str]:
    return decrypt(value_encrypted) if value_encrypted else None
