"""create provider authentications, accounts and user sessions

Revision ID: 3f1a2b4c5d6e
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1a2b4c5d6e"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _authentication_columns() -> list[sa.Column]:
    return [
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("access_token", sa.String(length=2048), nullable=False),
        sa.Column("refresh_token", sa.String(length=2048), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "scopes",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "spotify_authentications",
        *_authentication_columns(),
        sa.PrimaryKeyConstraint("user_id", name=op.f("pk_spotify_authentications")),
    )
    op.create_table(
        "github_authentications",
        *_authentication_columns(),
        sa.PrimaryKeyConstraint("user_id", name=op.f("pk_github_authentications")),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("spotify_user_id", sa.String(length=255), nullable=True),
        sa.Column("github_user_id", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["spotify_user_id"],
            ["spotify_authentications.user_id"],
            name=op.f("fk_accounts_spotify_user_id_spotify_authentications"),
            ondelete="CASCADE",
            onupdate="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["github_user_id"],
            ["github_authentications.user_id"],
            name=op.f("fk_accounts_github_user_id_github_authentications"),
            ondelete="CASCADE",
            onupdate="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_accounts")),
        sa.UniqueConstraint("spotify_user_id", name=op.f("uq_accounts_spotify_user_id")),
        sa.UniqueConstraint("github_user_id", name=op.f("uq_accounts_github_user_id")),
    )

    op.create_table(
        "user_sessions",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("account_id", sa.String(length=32), nullable=False),
        sa.Column(
            "last_seen_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["accounts.id"],
            name=op.f("fk_user_sessions_account_id_accounts"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_user_sessions")),
    )
    op.create_index(
        op.f("ix_user_sessions_account_id"),
        "user_sessions",
        ["account_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_user_sessions_last_seen_at"),
        "user_sessions",
        ["last_seen_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_user_sessions_last_seen_at"), table_name="user_sessions")
    op.drop_index(op.f("ix_user_sessions_account_id"), table_name="user_sessions")
    op.drop_table("user_sessions")
    op.drop_table("accounts")
    op.drop_table("github_authentications")
    op.drop_table("spotify_authentications")
