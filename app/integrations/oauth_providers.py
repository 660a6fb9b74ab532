"""OAuth clients for the Spotify (source) and GitHub (destination) providers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from app.api.v1.auth.constants import (
    GITHUB_AUTH_URL,
    GITHUB_TOKEN_URL,
    GITHUB_USERINFO_URL,
    SPOTIFY_AUTH_URL,
    SPOTIFY_SCOPES,
    SPOTIFY_TOKEN_URL,
    SPOTIFY_USERINFO_URL,
    USER_AGENT,
)
from app.config import Settings
from app.core.exceptions import InternalServiceError, UpstreamProviderError
from app.models.authentication import Provider
from app.schemas.auth import ProviderIdentity

logger = logging.getLogger(__name__)


class OAuthProviderClient(ABC):
    """Base async client: authorize URL, code exchange and profile lookup."""

    provider: Provider
    authorize_url: str
    token_url: str
    userinfo_url: str

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        client_id, client_secret = settings.client_credentials_for(self.provider.value)
        callback_url = settings.callback_url_for(self.provider.value)
        if not client_id or not client_secret or not callback_url:
            raise InternalServiceError(
                f"{self.provider.value}_oauth",
                "client id, client secret and callback URL must be configured",
            )

        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.timeout_seconds = settings.oauth_http_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> OAuthProviderClient:
        self._client = httpx.AsyncClient(
            timeout=self.timeout_seconds,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} must be used as async context manager")
        return self._client

    def build_authorize_url(self, state: str) -> str:
        return f"{self.authorize_url}?{urlencode(self.authorize_params(state))}"

    def authorize_params(self, state: str) -> dict[str, str]:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "state": state,
        }

    async def complete_login(self, code: str) -> ProviderIdentity:
        """Exchange ``code`` and fetch the profile, returning the provider identity."""
        token = await self.exchange_code(code)
        access_token = token["access_token"]
        provider_user_id = await self.fetch_user_id(access_token)
        return ProviderIdentity(
            provider=self.provider,
            provider_user_id=provider_user_id,
            access_token=access_token,
            refresh_token=_optional_str(token.get("refresh_token")),
            expires_at=_expires_at(token.get("expires_in")),
            scopes=_split_scopes(token.get("scope")),
        )

    @abstractmethod
    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Trade an authorization code for the provider's token payload."""
        pass

    @abstractmethod
    async def fetch_user_id(self, access_token: str) -> str:
        """Stable provider user id for ``access_token``."""
        pass

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        step: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        provider = self.provider.value
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(
                "OAuth provider unreachable",
                extra={"provider": provider, "step": step, "error": type(exc).__name__},
            )
            raise UpstreamProviderError(provider, f"{step}_unreachable") from exc

        if response.status_code >= 400:
            logger.warning(
                "OAuth provider request failed",
                extra={"provider": provider, "step": step, "status_code": response.status_code},
            )
            raise UpstreamProviderError(
                provider,
                f"{step}_failed",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamProviderError(
                provider,
                f"{step}_invalid_json",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise UpstreamProviderError(provider, f"{step}_unexpected_payload")

        # GitHub reports token errors with a 200 and an ``error`` field.
        error = body.get("error")
        if isinstance(error, str) and error:
            description = body.get("error_description")
            raise UpstreamProviderError(
                provider,
                error,
                status_code=response.status_code,
                description=description if isinstance(description, str) else None,
            )
        return body

    def _require_access_token(self, body: dict[str, Any]) -> dict[str, Any]:
        token = body.get("access_token")
        if not isinstance(token, str) or not token:
            raise UpstreamProviderError(self.provider.value, "token_missing")
        return body


class SpotifyOAuthClient(OAuthProviderClient):
    provider = Provider.SPOTIFY
    authorize_url = SPOTIFY_AUTH_URL
    token_url = SPOTIFY_TOKEN_URL
    userinfo_url = SPOTIFY_USERINFO_URL

    def authorize_params(self, state: str) -> dict[str, str]:
        params = super().authorize_params(state)
        params["scope"] = SPOTIFY_SCOPES
        return params

    async def exchange_code(self, code: str) -> dict[str, Any]:
        body = await self._request_json(
            "POST",
            self.token_url,
            step="token_exchange",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.callback_url,
            },
            auth=(self.client_id, self.client_secret),
        )
        return self._require_access_token(body)

    async def fetch_user_id(self, access_token: str) -> str:
        body = await self._request_json(
            "GET",
            self.userinfo_url,
            step="profile_fetch",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        user_id = body.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise UpstreamProviderError(self.provider.value, "profile_missing_id")
        return user_id


class GithubOAuthClient(OAuthProviderClient):
    provider = Provider.GITHUB
    authorize_url = GITHUB_AUTH_URL
    token_url = GITHUB_TOKEN_URL
    userinfo_url = GITHUB_USERINFO_URL

    async def exchange_code(self, code: str) -> dict[str, Any]:
        body = await self._request_json(
            "POST",
            self.token_url,
            step="token_exchange",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.callback_url,
            },
        )
        return self._require_access_token(body)

    async def fetch_user_id(self, access_token: str) -> str:
        body = await self._request_json(
            "GET",
            self.userinfo_url,
            step="profile_fetch",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
            },
        )
        user_id = body.get("id")
        # GitHub ids are integers; stored as text.
        if isinstance(user_id, bool) or not isinstance(user_id, int | str) or user_id == "":
            raise UpstreamProviderError(self.provider.value, "profile_missing_id")
        return str(user_id)


OAUTH_CLIENTS: dict[Provider, type[OAuthProviderClient]] = {
    Provider.SPOTIFY: SpotifyOAuthClient,
    Provider.GITHUB: GithubOAuthClient,
}


def oauth_client_for(
    provider: Provider,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> OAuthProviderClient:
    """Instantiate the OAuth client for ``provider``."""
    return OAUTH_CLIENTS[provider](settings, transport=transport)


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _expires_at(expires_in: object) -> datetime | None:
    if isinstance(expires_in, bool) or not isinstance(expires_in, int | float):
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


def _split_scopes(raw: object) -> list[str]:
    if not isinstance(raw, str):
        return []
    return [scope for scope in raw.replace(",", " ").split() if scope]
