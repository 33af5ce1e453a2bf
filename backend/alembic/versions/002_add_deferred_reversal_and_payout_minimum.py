"""add_deferred_reversal_and_payout_minimum

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 15:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Reversal requested while the earning sat in an in-flight payout
    op.add_column('earnings', sa.Column('reversal_requested_at', sa.DateTime(), nullable=True))
    op.add_column('earnings', sa.Column('reversal_requested_by', sa.String(64), nullable=True))
    op.add_column('earnings', sa.Column('reversal_reason', sa.Text(), nullable=True))

    # Per-user payout threshold, never below the currency minimum
    op.add_column('users', sa.Column('minimum_payout_amount', sa.Integer(), nullable=True))


def downgrade() -> None:
    op.drop_column('users', 'minimum_payout_amount')
    op.drop_column('earnings', 'reversal_reason')
    op.drop_column('earnings', 'reversal_requested_by')
    op.drop_column('earnings', 'reversal_requested_at')
