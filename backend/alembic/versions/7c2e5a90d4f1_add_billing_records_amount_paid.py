"""add billing_records.amount_paid

Revision ID: 7c2e5a90d4f1
Revises: 3f9a1c7d2b10
Create Date: 2026-10-19 15:40:02.117930

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7c2e5a90d4f1"
down_revision: str | Sequence[str] | None = "3f9a1c7d2b10"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column(
        "billing_records",
        sa.Column("amount_paid", sa.Numeric(precision=12, scale=2), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_column("billing_records", "amount_paid")
