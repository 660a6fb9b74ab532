"""FastAPI dependencies shared by the v1 routes."""

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Request

from app.config import Settings
from app.core.exceptions import SessionNotFoundError
from app.integrations.oauth_providers import OAuthProviderClient, oauth_client_for
from app.models.authentication import Provider
from app.services.reconciliation import CurrentUser, ReconciliationService

OAuthClientFactory = Callable[[Provider], OAuthProviderClient]


def get_app_settings(request: Request) -> Settings:
    """Settings object the application was created with."""
    return request.app.state.settings


AppSettings = Annotated[Settings, Depends(get_app_settings)]


def get_reconciliation_service(request: Request) -> ReconciliationService:
    """Service created during application startup."""
    return request.app.state.reconciliation_service


Reconciliation = Annotated[ReconciliationService, Depends(get_reconciliation_service)]


def get_oauth_client_factory(settings: AppSettings) -> OAuthClientFactory:
    """Build OAuth clients bound to the application settings."""

    def factory(provider: Provider) -> OAuthProviderClient:
        return oauth_client_for(provider, settings)

    return factory


OAuthClients = Annotated[OAuthClientFactory, Depends(get_oauth_client_factory)]


def get_session_id(request: Request, settings: AppSettings) -> str | None:
    """Session cookie value, or None when the browser sent none."""
    return request.cookies.get(settings.session_cookie_name) or None


SessionId = Annotated[str | None, Depends(get_session_id)]


def get_oauth_state_nonce(request: Request, settings: AppSettings) -> str | None:
    """Nonce cookie set when this browser started an OAuth flow."""
    return request.cookies.get(settings.oauth_state_cookie_name) or None


OAuthStateNonce = Annotated[str | None, Depends(get_oauth_state_nonce)]


async def get_optional_current_user(
    session_id: SessionId,
    service: Reconciliation,
) -> CurrentUser | None:
    """Resolve the session cookie; unknown or missing sessions are anonymous."""
    return await service.resolve_session(session_id)


OptionalCurrentAccount = Annotated[CurrentUser | None, Depends(get_optional_current_user)]


async def get_current_user(current: OptionalCurrentAccount) -> CurrentUser:
    """Require a resolved session."""
    if current is None:
        raise SessionNotFoundError()
    return current


CurrentAccount = Annotated[CurrentUser, Depends(get_current_user)]
