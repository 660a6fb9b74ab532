"""Application-wide identifier utilities."""

from __future__ import annotations

import secrets
import uuid

SESSION_TOKEN_MIN_BYTES = 32


def generate_account_id() -> str:
    """Generate an opaque account identifier (32 lowercase hex characters)."""
    return uuid.uuid4().hex


def generate_session_token(nbytes: int = SESSION_TOKEN_MIN_BYTES) -> str:
    """Generate an opaque, unguessable session identifier.

    Tokens are URL-safe so they can be stored in a cookie without quoting.
    Requests for fewer than ``SESSION_TOKEN_MIN_BYTES`` bytes of entropy are
    raised to the minimum.
    """
    return secrets.token_urlsafe(max(nbytes, SESSION_TOKEN_MIN_BYTES))


def looks_like_session_token(value: str | None) -> bool:
    """Cheap shape check applied to cookie values before touching the database."""
    if not value or len(value) < 43 or len(value) > 128:
        return False
    return all(ch.isalnum() or ch in "-_" for ch in value)
