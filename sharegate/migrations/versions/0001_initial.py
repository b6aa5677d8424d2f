"""Initial sharing schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

audit_actor_type = sa.Enum("USER", "ADMIN", "SYSTEM", name="audit_actor_type")


def upgrade() -> None:
    op.create_table(
        "share_files",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_path", sa.String(length=1024), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("file_type", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("user_id", "file_path", name="uq_share_files_user_path"),
    )
    op.create_index("ix_share_files_user_id", "share_files", ["user_id"], unique=False)
    op.create_index("ix_share_files_file_path", "share_files", ["file_path"], unique=False)

    op.create_table(
        "shares",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("share_code", sa.String(length=16), nullable=False),
        sa.Column("share_name", sa.String(length=255), nullable=False),
        sa.Column("file_id", sa.Integer(), nullable=False),
        sa.Column("access_password_hash", sa.String(length=255), nullable=True),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("extension", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["file_id"], ["share_files.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_shares_share_code", "shares", ["share_code"], unique=True)
    op.create_index("ix_shares_file_id", "shares", ["file_id"], unique=False)

    op.create_table(
        "download_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("share_code", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("file_path", sa.String(length=1024), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_download_tokens_token", "download_tokens", ["token"], unique=True)
    op.create_index("ix_download_tokens_share_code", "download_tokens", ["share_code"], unique=False)
    op.create_index("ix_download_tokens_expires_at", "download_tokens", ["expires_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_download_tokens_expires_at", table_name="download_tokens")
    op.drop_index("ix_download_tokens_share_code", table_name="download_tokens")
    op.drop_index("ix_download_tokens_token", table_name="download_tokens")
    op.drop_table("download_tokens")

    op.drop_index("ix_shares_file_id", table_name="shares")
    op.drop_index("ix_shares_share_code", table_name="shares")
    op.drop_table("shares")

    op.drop_index("ix_share_files_file_path", table_name="share_files")
    op.drop_index("ix_share_files_user_id", table_name="share_files")
    op.drop_table("share_files")

    audit_actor_type.drop(op.get_bind(), checkfirst=True)
