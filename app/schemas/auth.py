"""Authentication and account schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.authentication import Provider


class ProviderIdentity(BaseModel):
    """Identity obtained by completing a provider's OAuth flow."""

    provider: Provider
    provider_user_id: str = Field(min_length=1, max_length=255)
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)

    def __repr__(self) -> str:
        return f"ProviderIdentity(provider={self.provider.value!r}, provider_user_id={self.provider_user_id!r})"


class OAuthCallbackParams(BaseModel):
    """Query parameters a provider sends back to the callback endpoint.

    Either ``code`` (success) or ``error`` (failure) is present.
    """

    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None

    @property
    def is_failure(self) -> bool:
        return self.error is not None


class LinkedIdentityResponse(BaseModel):
    """One provider link on an account."""

    provider: Provider
    user_id: str | None


class AccountResponse(BaseModel):
    """Schema for the current account."""

    id: str
    state: str
    is_complete: bool
    created_at: datetime | None
    identities: list[LinkedIdentityResponse]


class LogoutResponse(BaseModel):
    """Result of a logout request."""

    session_deleted: bool
    account_deleted: bool


class DeleteAccountRequest(BaseModel):
    """Explicit confirmation required to delete an account."""

    confirmation: str = Field(min_length=1)


class AuthMessageResponse(BaseModel):
    """Simple auth message response."""

    message: str


class ErrorBody(BaseModel):
    kind: str
    message: str
    details: dict = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Body returned for every handled application error."""

    error: ErrorBody
