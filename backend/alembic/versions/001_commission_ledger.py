"""commission_ledger

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users known to the ledger
    op.create_table(
        'users',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('user_role', sa.String(50), nullable=False, server_default='user'),
        sa.Column('stripe_connect_account_id', sa.String(255), nullable=True),
        sa.Column('payout_method', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('payout_destination_type', sa.String(20), nullable=False, server_default='bank_account'),
        sa.Column('payout_currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('idx_user_status', 'users', ['status'])
    op.create_index('idx_user_connect_account', 'users', ['stripe_connect_account_id'])

    # Payouts (created before earnings, which reference them)
    op.create_table(
        'payouts',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('beneficiary_id', sa.String(36), nullable=False),
        sa.Column('destination_account_ref', sa.String(255), nullable=False),
        sa.Column('destination_type', sa.String(20), nullable=False, server_default='bank_account'),
        sa.Column('method', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fee_processor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fee_platform', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fee_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('net_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('external_payout_id', sa.String(255), nullable=True),
        sa.Column('external_transfer_id', sa.String(255), nullable=True),
        sa.Column('requested_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('in_transit_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('returned_at', sa.DateTime(), nullable=True),
        sa.Column('failure_code', sa.String(100), nullable=True),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('processed_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['beneficiary_id'], ['users.uuid']),
        sa.UniqueConstraint('external_payout_id'),
        sa.CheckConstraint('amount >= 0', name='ck_payout_amount_non_negative'),
    )
    op.create_index('idx_payout_beneficiary_status', 'payouts', ['beneficiary_id', 'status'])
    op.create_index('idx_payout_status_requested', 'payouts', ['status', 'requested_at'])

    # Earnings ledger
    op.create_table(
        'earnings',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('beneficiary_id', sa.String(36), nullable=False),
        sa.Column('counterparty_user_id', sa.String(36), nullable=False),
        sa.Column('billing_subject_ref', sa.String(255), nullable=False),
        sa.Column('external_payment_id', sa.String(255), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('tier_level', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('plan', sa.String(50), nullable=False),
        sa.Column('origin_earning_id', sa.String(36), nullable=True),
        sa.Column('parent_earning_id', sa.String(36), nullable=True),
        sa.Column('gross_amount', sa.Integer(), nullable=False),
        sa.Column('base_amount', sa.Integer(), nullable=False),
        sa.Column('commission_rate', sa.Numeric(10, 6), nullable=False),
        sa.Column('commission_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('is_gifted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('hold_policy', sa.String(10), nullable=False, server_default='timed'),
        sa.Column('hold_period_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('payment_completed_at', sa.DateTime(), nullable=True),
        sa.Column('eligible_for_payout_at', sa.DateTime(), nullable=True),
        sa.Column('payout_id', sa.String(36), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.String(64), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('disputed_at', sa.DateTime(), nullable=True),
        sa.Column('disputed_by', sa.String(64), nullable=True),
        sa.Column('dispute_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(64), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['origin_earning_id'], ['earnings.uuid']),
        sa.ForeignKeyConstraint(['parent_earning_id'], ['earnings.uuid']),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.uuid']),
        sa.CheckConstraint('commission_amount >= 0', name='ck_earning_commission_non_negative'),
        sa.CheckConstraint('tier_level >= 1', name='ck_earning_tier_level'),
    )
    op.create_index('idx_earning_beneficiary_status', 'earnings', ['beneficiary_id', 'status'])
    op.create_index('idx_earning_billing_subject', 'earnings', ['billing_subject_ref'])
    op.create_index('idx_earning_status_eligible', 'earnings', ['status', 'eligible_for_payout_at'])
    op.create_index('idx_earning_payout_id', 'earnings', ['payout_id'])
    op.create_index('idx_earning_counterparty', 'earnings', ['counterparty_user_id'])

    # Earnings included in each payout
    op.create_table(
        'payout_items',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('payout_id', sa.String(36), nullable=False),
        sa.Column('earning_id', sa.String(36), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.uuid'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['earning_id'], ['earnings.uuid']),
        sa.UniqueConstraint('payout_id', 'earning_id', name='uq_payout_item_earning'),
    )
    op.create_index('idx_payout_items_payout_id', 'payout_items', ['payout_id'])
    op.create_index('idx_payout_items_earning_id', 'payout_items', ['earning_id'])

    # Idempotency records for billing facts
    op.create_table(
        'processed_payments',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('billing_subject_ref', sa.String(255), nullable=False),
        sa.Column('external_payment_id', sa.String(255), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.UniqueConstraint('billing_subject_ref', 'external_payment_id', name='uq_processed_payment_key'),
    )

    # Notification outbox
    op.create_table(
        'ledger_events',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('beneficiary_id', sa.String(36), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('uuid'),
    )
    op.create_index('idx_ledger_event_status_created', 'ledger_events', ['status', 'created_at'])
    op.create_index('idx_ledger_event_beneficiary', 'ledger_events', ['beneficiary_id'])

    # Summary snapshots
    op.create_table(
        'earnings_summaries',
        sa.Column('beneficiary_id', sa.String(36), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('pending_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('disputed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('disputed_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancelled_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancelled_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refreshed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('beneficiary_id', 'currency'),
    )
    op.create_index('idx_earnings_summary_approved_total', 'earnings_summaries', ['approved_total'])


def downgrade() -> None:
    op.drop_table('earnings_summaries')
    op.drop_table('ledger_events')
    op.drop_table('processed_payments')
    op.drop_table('payout_items')
    op.drop_table('earnings')
    op.drop_table('payouts')
    op.drop_table('users')
