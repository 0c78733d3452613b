"""Initial schema: users, jobs, email_tokens, gmail_sync_status, background_jobs, oauth_state.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    # users is owned by the login service; create it only when absent
    if "users" not in tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
        )
        op.create_index(op.f("ix_users_id"), "users", ["id"], unique=False)
        op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    if "jobs" not in tables:
        op.create_table(
            "jobs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("company", sa.String(), nullable=False),
            sa.Column("position", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=True),
            sa.Column("applied_date", sa.DateTime(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("gmail_message_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("user_id", "gmail_message_id", name="uq_jobs_user_gmail_message"),
        )
        op.create_index(op.f("ix_jobs_id"), "jobs", ["id"], unique=False)
        op.create_index(op.f("ix_jobs_user_id"), "jobs", ["user_id"], unique=False)
        op.create_index(op.f("ix_jobs_status"), "jobs", ["status"], unique=False)
        op.create_index(op.f("ix_jobs_gmail_message_id"), "jobs", ["gmail_message_id"], unique=False)
    else:
        cols = {c["name"] for c in inspector.get_columns("jobs")}
        if "gmail_message_id" not in cols:
            op.add_column("jobs", sa.Column("gmail_message_id", sa.String(), nullable=True))
            op.create_index(op.f("ix_jobs_gmail_message_id"), "jobs", ["gmail_message_id"], unique=False)
        uniques = {u["name"] for u in inspector.get_unique_constraints("jobs")}
        if "uq_jobs_user_gmail_message" not in uniques and conn.dialect.name != "sqlite":
            op.create_unique_constraint("uq_jobs_user_gmail_message", "jobs", ["user_id", "gmail_message_id"])

    if "email_tokens" not in tables:
        op.create_table(
            "email_tokens",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("provider", sa.String(50), nullable=False),
            sa.Column("access_token_enc", sa.LargeBinary(), nullable=False),
            sa.Column("refresh_token_enc", sa.LargeBinary(), nullable=True),
            sa.Column("expiry", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("user_id", "provider", name="uq_email_tokens_user_provider"),
        )
        op.create_index(op.f("ix_email_tokens_id"), "email_tokens", ["id"], unique=False)

    if "gmail_sync_status" not in tables:
        op.create_table(
            "gmail_sync_status",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
            sa.Column("initial_sync_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("initial_sync_started_at", sa.DateTime(), nullable=True),
            sa.Column("initial_sync_completed_at", sa.DateTime(), nullable=True),
            sa.Column("last_history_id", sa.String(255), nullable=True),
            sa.Column("total_imported", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index(op.f("ix_gmail_sync_status_id"), "gmail_sync_status", ["id"], unique=False)

    if "background_jobs" not in tables:
        op.create_table(
            "background_jobs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("type", sa.String(50), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.Column("process_after", sa.DateTime(), nullable=False),
        )
        op.create_index(op.f("ix_background_jobs_id"), "background_jobs", ["id"], unique=False)
        op.create_index(op.f("ix_background_jobs_user_id"), "background_jobs", ["user_id"], unique=False)
        op.create_index(
            "ix_background_jobs_status_process_after",
            "background_jobs",
            ["status", "process_after"],
            unique=False,
        )

    if "oauth_state" not in tables:
        op.create_table(
            "oauth_state",
            sa.Column("state_token", sa.String(64), primary_key=True),
            sa.Column("kind", sa.String(32), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
            sa.Column("redirect_url", sa.String(512), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index(op.f("ix_oauth_state_kind"), "oauth_state", ["kind"], unique=False)
        op.create_index(op.f("ix_oauth_state_user_id"), "oauth_state", ["user_id"], unique=False)


def downgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    for table in ("oauth_state", "background_jobs", "gmail_sync_status", "email_tokens"):
        if table in tables:
            op.drop_table(table)
    # jobs and users belong to the tracker itself and are left in place.
