"""Fernet encryption for refresh tokens at rest. Without ENCRYPTION_KEY (development) values stay plaintext."""
from cryptography.fernet import Fernet, InvalidToken

from fitclub.config import settings


def get_fernet() -> Fernet | None:
    if not settings.encryption_key:
        return None
    return Fernet(settings.encryption_key.encode())


def encrypt_token(value: str | None) -> str | None:
    if not value:
        return None
    f = get_fernet()
    if f is None:
        return value
    return f.encrypt(value.encode()).decode()


def decrypt_token(encrypted: str | None) -> str | None:
    """Plain token, or None when absent or undecryptable (treated as not connected)."""
    if not encrypted:
        return None
    f = get_fernet()
    if f is None:
        return encrypted
    try:
        return f.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return None
