"""Utility helpers for authentication and OAuth routes."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any

from fastapi import Response

from app.config import Settings
from app.core.exceptions import InvalidOAuthStateError, UnknownProviderError
from app.models.authentication import Provider

logger = logging.getLogger(__name__)

# Covers every /api/v1/auth/{provider}/callback route.
OAUTH_STATE_COOKIE_PATH = "/api/v1/auth"


def parse_provider(value: str) -> Provider:
    """Map a path segment onto a supported provider."""
    try:
        return Provider(value.strip().lower())
    except ValueError as exc:
        raise UnknownProviderError(value) from exc


def _b64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    """Base64url decode with padding restoration."""
    padding = "=" * ((4 - len(data) % 4) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _sign(secret: str, payload: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()


def generate_oauth_nonce() -> str:
    """Per-flow nonce shared between the signed state and the browser cookie."""
    return secrets.token_urlsafe(16)


def encode_oauth_state(
    provider: Provider,
    settings: Settings,
    *,
    nonce: str | None = None,
    now: int | None = None,
) -> str:
    """Sign and encode an expiring OAuth state for ``provider``."""
    issued_at = int(time.time()) if now is None else now
    payload = {
        "provider": provider.value,
        "nonce": nonce or generate_oauth_nonce(),
        "exp": issued_at + settings.oauth_state_ttl_seconds,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = _sign(settings.oauth_state_secret, payload_json)
    return f"{_b64url_encode(payload_json)}.{_b64url_encode(signature)}"


def decode_oauth_state(
    state: str | None,
    expected_provider: Provider,
    settings: Settings,
    *,
    browser_nonce: str | None,
    now: int | None = None,
) -> dict[str, Any]:
    """Verify and decode an OAuth state produced by ``encode_oauth_state``.

    ``browser_nonce`` is the value of the state cookie set when the flow
    started; a state minted for another browser is rejected.
    """
    if not state:
        raise InvalidOAuthStateError("missing_state")

    try:
        encoded_payload, encoded_signature = state.split(".", 1)
        payload_bytes = _b64url_decode(encoded_payload)
        signature_bytes = _b64url_decode(encoded_signature)
    except ValueError as exc:
        raise InvalidOAuthStateError() from exc

    if not hmac.compare_digest(signature_bytes, _sign(settings.oauth_state_secret, payload_bytes)):
        raise InvalidOAuthStateError()

    try:
        decoded_payload = json.loads(payload_bytes.decode("utf-8"))
    except ValueError as exc:
        raise InvalidOAuthStateError() from exc

    if not isinstance(decoded_payload, dict):
        raise InvalidOAuthStateError()
    payload: dict[str, Any] = {str(key): value for key, value in decoded_payload.items()}

    if payload.get("provider") != expected_provider.value:
        raise InvalidOAuthStateError("provider_mismatch")

    expires_at = payload.get("exp")
    if isinstance(expires_at, bool) or not isinstance(expires_at, int):
        raise InvalidOAuthStateError()
    current = int(time.time()) if now is None else now
    if expires_at < current:
        raise InvalidOAuthStateError("state_expired")

    if not browser_nonce:
        raise InvalidOAuthStateError("missing_state_cookie")
    nonce = payload.get("nonce")
    if not isinstance(nonce, str) or not hmac.compare_digest(
        nonce.encode("utf-8"), browser_nonce.encode("utf-8")
    ):
        raise InvalidOAuthStateError("state_mismatch")

    return payload


def set_session_cookie(response: Response, session_id: str, settings: Settings) -> None:
    """Attach the session cookie to ``response``."""
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        max_age=settings.session_max_age_days * 24 * 60 * 60,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    """Expire the session cookie on ``response``."""
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def set_oauth_state_cookie(response: Response, nonce: str, settings: Settings) -> None:
    """Bind the OAuth flow to this browser until the state expires."""
    response.set_cookie(
        key=settings.oauth_state_cookie_name,
        value=nonce,
        max_age=settings.oauth_state_ttl_seconds,
        path=OAUTH_STATE_COOKIE_PATH,
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def clear_oauth_state_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.oauth_state_cookie_name,
        path=OAUTH_STATE_COOKIE_PATH,
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )
