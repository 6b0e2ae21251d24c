"""*Fernet* encryption helper for provider credentials stored at rest.

The key comes from ``FERNET_SECRET`` and is loaded lazily so that importing
this module never requires the secret (tests patch it in via env).
"""

from __future__ import annotations

from functools import lru_cache

from cryptography.fernet import Fernet
from cryptography.fernet import InvalidToken

from humanagent.config import get_settings


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    try:
        return Fernet(secret.encode())
    except ValueError as exc:
        raise RuntimeError("FERNET_SECRET is not a valid url-safe base64 32-byte key") from exc


def _fernet() -> Fernet:
    secret = get_settings().fernet_secret
    if not secret:
        raise RuntimeError("FERNET_SECRET environment variable must be set.")
    return _fernet_for(secret)


def encrypt(text: str) -> str:  # noqa: D401 – thin wrapper
    """Encrypt *text* and return url-safe base64 ciphertext."""

    return _fernet().encrypt(text.encode()).decode()


def decrypt(token: str) -> str:  # noqa: D401 – thin wrapper
    """Decrypt *token* back to UTF-8 string."""

    try:
        return _fernet().decrypt(token.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("decryption failed – invalid key or ciphertext") from exc


__all__ = [
    "encrypt",
    "decrypt",
]
