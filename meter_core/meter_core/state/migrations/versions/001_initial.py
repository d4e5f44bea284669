"""Initial schema for the gateway state store.

Creates ``profiles`` (account balance, tier, billing identifiers) and the
append-only ``usage_logs`` audit table.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True, unique=True),
        sa.Column("tier", sa.String(16), nullable=False, server_default="free"),
        sa.Column("tokens_remaining", sa.Integer(), nullable=False, server_default="10000"),
        sa.Column("billing_customer_id", sa.String(256), nullable=True),
        sa.Column("billing_subscription_id", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("tokens_remaining >= 0", name="ck_profiles_tokens_non_negative"),
        sa.CheckConstraint("tier IN ('free', 'pro')", name="ck_profiles_tier"),
    )
    op.create_index("ix_profiles_billing_subscription", "profiles", ["billing_subscription_id"])
    op.create_index("ix_profiles_billing_customer", "profiles", ["billing_customer_id"])

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("operation_type", sa.String(32), nullable=False),
        sa.Column("model", sa.String(256), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("latency_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error_type", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("status IN ('completed', 'failed')", name="ck_usage_logs_status"),
    )
    op.create_index("ix_usage_logs_user_created", "usage_logs", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_usage_logs_user_created")
    op.drop_table("usage_logs")
    op.drop_index("ix_profiles_billing_customer")
    op.drop_index("ix_profiles_billing_subscription")
    op.drop_table("profiles")
