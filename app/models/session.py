"""Server-side browser session bound to an account."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.ids import generate_session_token
from app.models.base import Base, CreatedAtMixin

if TYPE_CHECKING:
    from app.models.account import Account


class UserSession(Base, CreatedAtMixin):
    """Opaque session token issued as a cookie after a successful login."""

    __tablename__ = "user_sessions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True, default=generate_session_token)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    account_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    account: Mapped[Account] = relationship("Account", back_populates="sessions", lazy="raise")

    def __repr__(self) -> str:
        return f"<UserSession {self.id[:6]}... account={self.account_id}>"
