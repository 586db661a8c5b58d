"""payment attempts

Revision ID: 0001_payment_attempts
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_payment_attempts"
down_revision = None
branch_labels = None
depends_on = None


STATUSES = (
    "created",
    "pushed",
    "awaiting_confirmation",
    "confirmed",
    "declined",
    "expired",
    "errored",
)
SOURCES = ("callback", "poll", "timeout", "errored-at-push")


def _in_list(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")

    op.create_table(
        "payment_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=True),
        sa.Column("invoice_ref", sa.Text(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("payer_phone", sa.Text(), nullable=False),
        sa.Column("account_reference", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("checkout_id", sa.Text(), nullable=True),
        sa.Column("merchant_request_id", sa.Text(), nullable=True),
        sa.Column("provider_message", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="created"),
        sa.Column("result_code", sa.Text(), nullable=True),
        sa.Column("result_message", sa.Text(), nullable=True),
        sa.Column("receipt", sa.Text(), nullable=True),
        sa.Column("resolution_source", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("last_transition_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("amount > 0", name="ck_payment_attempts_amount_positive"),
        sa.CheckConstraint(f"status IN ({_in_list(STATUSES)})", name="ck_payment_attempts_status"),
        sa.CheckConstraint(
            f"resolution_source IS NULL OR resolution_source IN ({_in_list(SOURCES)})",
            name="ck_payment_attempts_resolution_source",
        ),
        # pushed and everything after it carries the provider's checkout id
        sa.CheckConstraint(
            "status IN ('created', 'errored') OR checkout_id IS NOT NULL",
            name="ck_payment_attempts_checkout_required",
        ),
        schema="app",
    )

    op.create_index(
        "ux_payment_attempts_checkout_id",
        "payment_attempts",
        ["checkout_id"],
        unique=True,
        schema="app",
        postgresql_where=sa.text("checkout_id IS NOT NULL"),
    )
    op.create_index(
        "ix_payment_attempts_status_last_transition",
        "payment_attempts",
        ["status", "last_transition_at"],
        schema="app",
    )
    op.create_index(
        "ix_payment_attempts_invoice_owner",
        "payment_attempts",
        ["invoice_ref", "owner_id", "created_at"],
        schema="app",
    )


def downgrade() -> None:
    op.drop_index("ix_payment_attempts_invoice_owner", table_name="payment_attempts", schema="app")
    op.drop_index("ix_payment_attempts_status_last_transition", table_name="payment_attempts", schema="app")
    op.drop_index("ux_payment_attempts_checkout_id", table_name="payment_attempts", schema="app")
    op.drop_table("payment_attempts", schema="app")
