"""Per-provider OAuth authentication records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, EncryptedString, TimestampMixin


class Provider(str, Enum):
    """External identity providers an account can be linked to."""

    SPOTIFY = "spotify"
    GITHUB = "github"


class ProviderAuthenticationMixin(TimestampMixin):
    """Columns shared by every provider's authentication table.

    ``user_id`` is the provider-assigned identifier and therefore globally
    unique per provider, independent of which account links it.
    """

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    access_token: Mapped[str] = mapped_column(EncryptedString(), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(EncryptedString(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scopes: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)


class SpotifyAuthentication(Base, ProviderAuthenticationMixin):
    """Spotify identity seen by the system (the streaming source)."""

    __tablename__ = "spotify_authentications"

    def __repr__(self) -> str:
        return f"<SpotifyAuthentication {self.user_id}>"


class GithubAuthentication(Base, ProviderAuthenticationMixin):
    """GitHub identity seen by the system (the backup destination)."""

    __tablename__ = "github_authentications"

    def __repr__(self) -> str:
        return f"<GithubAuthentication {self.user_id}>"


AUTHENTICATION_MODELS: dict[Provider, type[SpotifyAuthentication] | type[GithubAuthentication]] = {
    Provider.SPOTIFY: SpotifyAuthentication,
    Provider.GITHUB: GithubAuthentication,
}


def authentication_model_for(
    provider: Provider,
) -> type[SpotifyAuthentication] | type[GithubAuthentication]:
    """Return the ORM class storing identities for ``provider``."""
    return AUTHENTICATION_MODELS[provider]
