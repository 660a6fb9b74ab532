"""Account model: the aggregate root linking provider identities."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.ids import generate_account_id
from app.models.authentication import Provider
from app.models.base import Base, CreatedAtMixin

if TYPE_CHECKING:
    from app.models.session import UserSession


# Unique constraints on the link columns, named by the metadata naming convention.
IDENTITY_LINK_CONSTRAINTS = frozenset(
    f"uq_accounts_{provider.value}_user_id" for provider in Provider
)


class AccountState(str, Enum):
    """Linking progress of an account."""

    INCOMPLETE = "incomplete"
    COMPLETE = "complete"


class Account(Base, CreatedAtMixin):
    """Local account owning at most one Spotify and one GitHub identity.

    Both link columns are unique, so a provider identity can never be claimed
    by two accounts. Deleting a linked authentication row deletes the account
    that links it; deleting the account deletes its sessions.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_account_id)
    spotify_user_id: Mapped[str | None] = mapped_column(
        String(255),
        ForeignKey(
            "spotify_authentications.user_id",
            ondelete="CASCADE",
            onupdate="CASCADE",
        ),
        unique=True,
        nullable=True,
    )
    github_user_id: Mapped[str | None] = mapped_column(
        String(255),
        ForeignKey(
            "github_authentications.user_id",
            ondelete="CASCADE",
            onupdate="CASCADE",
        ),
        unique=True,
        nullable=True,
    )

    sessions: Mapped[list[UserSession]] = relationship(
        "UserSession",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    def linked_user_id(self, provider: Provider) -> str | None:
        """Return the provider user id linked to this account, if any."""
        return getattr(self, f"{provider.value}_user_id")

    def set_linked_user_id(self, provider: Provider, user_id: str | None) -> None:
        setattr(self, f"{provider.value}_user_id", user_id)

    @property
    def is_complete(self) -> bool:
        return self.spotify_user_id is not None and self.github_user_id is not None

    @property
    def state(self) -> AccountState:
        return AccountState.COMPLETE if self.is_complete else AccountState.INCOMPLETE

    def __repr__(self) -> str:
        return f"<Account {self.id} {self.state.value}>"
