"""Directory and impersonation tables

Revision ID: 20261016_000001
Revises: 
Create Date: 2026-10-16 09:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261016_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "buildings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True, index=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, index=True),
        sa.Column("building_id", sa.String(), sa.ForeignKey("buildings.id"), nullable=True, index=True),
        sa.Column("banned_until", sa.DateTime(), nullable=True),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "impersonation_grants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("admin_id", sa.String(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("allowed_target_roles", sa.JSON(), nullable=False),
        sa.Column("allowed_building_ids", sa.JSON(), nullable=True),
        sa.Column("max_session_duration_minutes", sa.Integer(), nullable=False, server_default="120"),
        sa.Column("max_daily_sessions", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("max_concurrent_sessions", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("allowed_actions", sa.JSON(), nullable=False),
        sa.Column("restricted_actions", sa.JSON(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=False),
        sa.Column("granted_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "impersonation_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("session_id", sa.String(), nullable=False, unique=True, index=True),
        sa.Column("admin_id", sa.String(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("admin_email", sa.String(), nullable=False),
        sa.Column("admin_ip_address", sa.String(), nullable=True),
        sa.Column("admin_user_agent", sa.Text(), nullable=True),
        sa.Column("target_user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("target_email", sa.String(), nullable=False),
        sa.Column("target_role", sa.String(), nullable=False),
        sa.Column("target_building_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("additional_notes", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active", index=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "uq_impersonation_sessions_active_pair",
        "impersonation_sessions",
        ["admin_id", "target_user_id"],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "impersonation_actions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "session_id",
            sa.String(),
            sa.ForeignKey("impersonation_sessions.session_id"),
            nullable=False,
            index=True,
        ),
        sa.Column("admin_id", sa.String(), nullable=False, index=True),
        sa.Column("target_user_id", sa.String(), nullable=False, index=True),
        sa.Column("action_type", sa.String(), nullable=False, index=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("page_context", sa.String(), nullable=True),
        sa.Column("component_name", sa.String(), nullable=True),
        sa.Column("affected_data_type", sa.String(), nullable=True),
        sa.Column("affected_record_id", sa.String(), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("risk_level", sa.String(), nullable=False, index=True),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("system_generated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("performed_at", sa.DateTime(), nullable=False, index=True),
    )

    op.create_table(
        "impersonation_security_alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("type", sa.String(), nullable=False, index=True),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True, index=True),
        sa.Column("admin_id", sa.String(), nullable=True, index=True),
        sa.Column("target_user_id", sa.String(), nullable=True),
        sa.Column("detected_at", sa.DateTime(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("impersonation_security_alerts")
    op.drop_table("impersonation_actions")
    op.drop_index("uq_impersonation_sessions_active_pair", table_name="impersonation_sessions")
    op.drop_table("impersonation_sessions")
    op.drop_table("impersonation_grants")
    op.drop_table("users")
    op.drop_table("buildings")
