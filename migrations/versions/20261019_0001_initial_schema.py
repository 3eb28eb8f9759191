"""Initial gateway schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    """Apply the initial schema migration."""
    op.create_table(
        "device_sessions",
        sa.Column("id", sa.String(length=64), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_device_sessions"),
    )

    op.create_table(
        "cli_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("device_session_id", sa.String(length=64), nullable=False),
        sa.Column("hashed_session_token", sa.String(length=64), nullable=False),
        sa.Column("hashed_refresh_token", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("device_info", sa.String(length=512), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_cli_sessions"),
        sa.UniqueConstraint("hashed_session_token", name="uq_cli_sessions_hashed_session_token"),
        sa.UniqueConstraint("hashed_refresh_token", name="uq_cli_sessions_hashed_refresh_token"),
    )
    op.create_index(
        "ix_cli_sessions_device_session_id", "cli_sessions", ["device_session_id"], unique=False
    )
    op.create_index("ix_cli_sessions_expires_at", "cli_sessions", ["expires_at"], unique=False)

    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(length=128), nullable=False),
        sa.Column("device_session_id", sa.String(length=64), nullable=True),
        sa.Column("service_name", sa.String(length=32), nullable=True),
        sa.Column("account_id", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["device_session_id"],
            ["device_sessions.id"],
            name="fk_oauth_states_device_session_id_device_sessions",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("state", name="pk_oauth_states"),
    )
    op.create_index("ix_oauth_states_expires_at", "oauth_states", ["expires_at"], unique=False)

    op.create_table(
        "connections",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("device_session_id", sa.String(length=64), nullable=False),
        sa.Column("service_name", sa.String(length=32), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column(
            "service_metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["device_session_id"],
            ["device_sessions.id"],
            name="fk_connections_device_session_id_device_sessions",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_connections"),
        sa.UniqueConstraint(
            "device_session_id", "service_name", name="uq_connections_device_session_service"
        ),
    )


def downgrade() -> None:
    """Revert the initial schema migration."""
    op.drop_table("connections")
    op.drop_index("ix_oauth_states_expires_at", table_name="oauth_states")
    op.drop_table("oauth_states")
    op.drop_index("ix_cli_sessions_expires_at", table_name="cli_sessions")
    op.drop_index("ix_cli_sessions_device_session_id", table_name="cli_sessions")
    op.drop_table("cli_sessions")
    op.drop_table("device_sessions")
