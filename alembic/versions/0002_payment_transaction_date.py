"""payment attempts: mpesa transaction date

Revision ID: 0002_payment_transaction_date
Revises: 0001_payment_attempts
Create Date: 2026-10-17 12:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_payment_transaction_date"
down_revision = "0001_payment_attempts"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "payment_attempts",
        sa.Column("transaction_date", sa.Text(), nullable=True),
        schema="app",
    )


def downgrade() -> None:
    op.drop_column("payment_attempts", "transaction_date", schema="app")
