"""Base model and column types for SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import DateTime, MetaData, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import String, TypeDecorator

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class EncryptedString(TypeDecorator):
    """Encrypted string type using Fernet symmetric encryption."""

    impl = String
    cache_ok = False

    def __init__(self, length: int = 2048) -> None:
        super().__init__(length=length)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        normalized = str(value).strip()
        if not normalized:
            return None

        from app.core.field_encryption import encrypt_token

        return encrypt_token(normalized)

    def process_result_value(self, value, dialect):
        if value is None:
            return None

        from app.core.field_encryption import decrypt_token

        return decrypt_token(str(value))


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class CreatedAtMixin:
    """Mixin that adds an immutable created_at timestamp."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class TimestampMixin(CreatedAtMixin):
    """Mixin that adds created_at and updated_at timestamps."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
