"""add_subscription_event_ordering

Revision ID: 3b7e91c05d2f
Revises: 8c1f2d7e4a90
Create Date: 2026-10-20 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3b7e91c05d2f"
down_revision = "8c1f2d7e4a90"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Newest applied event time, used to drop out-of-order snapshots
    op.add_column(
        "subscriptions",
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column(
        "subscriptions",
        sa.Column("trial_converted_invoice_id", sa.String(), nullable=True),
    )


def downgrade() -> None:
    with op.batch_alter_table("subscriptions") as batch_op:
        batch_op.drop_column("trial_converted_invoice_id")
        batch_op.drop_column("last_event_at")
