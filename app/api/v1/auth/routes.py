"""Authentication API endpoints."""

import logging

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse, RedirectResponse

from app.api.v1.auth.utils import (
    clear_oauth_state_cookie,
    clear_session_cookie,
    decode_oauth_state,
    encode_oauth_state,
    generate_oauth_nonce,
    parse_provider,
    set_oauth_state_cookie,
    set_session_cookie,
)
from app.core.exceptions import UpstreamProviderError
from app.core.logging import session_log_id
from app.dependencies import (
    AppSettings,
    OAuthClients,
    OAuthStateNonce,
    Reconciliation,
    SessionId,
)
from app.schemas.auth import LogoutResponse, OAuthCallbackParams

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{provider}/start")
async def oauth_start(
    provider: str,
    settings: AppSettings,
    oauth_clients: OAuthClients,
) -> RedirectResponse:
    """Start an OAuth flow and redirect to the provider consent screen."""
    resolved = parse_provider(provider)
    client = oauth_clients(resolved)
    nonce = generate_oauth_nonce()
    state = encode_oauth_state(resolved, settings, nonce=nonce)
    response = RedirectResponse(
        url=client.build_authorize_url(state),
        status_code=status.HTTP_302_FOUND,
    )
    set_oauth_state_cookie(response, nonce, settings)
    return response


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    settings: AppSettings,
    oauth_clients: OAuthClients,
    service: Reconciliation,
    session_id: SessionId,
    state_nonce: OAuthStateNonce,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> RedirectResponse:
    """Finish an OAuth flow, reconcile the login and issue the session cookie."""
    resolved = parse_provider(provider)
    params = OAuthCallbackParams(
        state=state,
        code=code,
        error=error,
        error_description=error_description,
    )
    decode_oauth_state(params.state, resolved, settings, browser_nonce=state_nonce)

    if params.is_failure:
        logger.info(
            "OAuth consent not granted",
            extra={"provider": resolved.value, "error": params.error},
        )
        raise UpstreamProviderError(
            resolved.value,
            params.error or "access_denied",
            description=params.error_description,
        )
    if not params.code:
        raise UpstreamProviderError(resolved.value, "missing_code")

    async with oauth_clients(resolved) as client:
        identity = await client.complete_login(params.code)

    result = await service.login_via_provider(session_id, identity)

    response = RedirectResponse(url=settings.login_redirect_path, status_code=status.HTTP_302_FOUND)
    set_session_cookie(response, result.session_id, settings)
    clear_oauth_state_cookie(response, settings)
    logger.info(
        "OAuth login completed",
        extra={
            "provider": resolved.value,
            "account_id": result.account.id,
            "session": session_log_id(result.session_id),
        },
    )
    return response


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    settings: AppSettings,
    service: Reconciliation,
    session_id: SessionId,
) -> JSONResponse:
    """Delete the current session; a request without a session is a no-op."""
    result = await service.logout(session_id)
    response = JSONResponse(
        content=LogoutResponse(
            session_deleted=result.session_deleted,
            account_deleted=result.account_deleted,
        ).model_dump()
    )
    clear_session_cookie(response, settings)
    return response
