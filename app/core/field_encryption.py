"""Field-level encryption for provider tokens stored in the database."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

_token_cipher: Fernet | None = None


def configure_token_cipher(key: bytes) -> None:
    """Install the Fernet key used for provider-token encryption.

    Called once at startup with ``Settings.get_token_encryption_key()``.
    """
    global _token_cipher
    _token_cipher = Fernet(key)


def get_token_cipher() -> Fernet:
    """Return the configured cipher, falling back to the cached settings key."""
    global _token_cipher
    if _token_cipher is None:
        from app.config import get_settings

        _token_cipher = Fernet(get_settings().get_token_encryption_key())
    return _token_cipher


def reset_token_cipher() -> None:
    """Forget the configured cipher (useful in tests after key changes)."""
    global _token_cipher
    _token_cipher = None


def encrypt_token(value: str) -> str:
    """Encrypt a provider access/refresh token for persistent storage."""
    return get_token_cipher().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_token(value: str) -> str:
    """Decrypt a stored provider token ciphertext."""
    try:
        return get_token_cipher().decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("invalid_provider_token_ciphertext") from exc
