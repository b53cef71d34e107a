"""Create deposit settlement tables

- payment_intents: deposit intents and their settlement state
- wallet_balances: per-user, per-asset balances
- wallet_transactions: append-only credit journal

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from luna_deposits.db.models import ASSET_VALUES, ExactNumeric, MinorUnits


# revision identifiers, used by Alembic.
revision: str = '0a1b2c3d4e5f'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create payment_intents, wallet_balances and wallet_transactions."""
    op.create_table(
        'payment_intents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('amount_minor', MinorUnits(), nullable=False),
        sa.Column('destination_address', sa.String(128), nullable=False),
        sa.Column('memo', sa.String(64), nullable=True),
        sa.Column('status', sa.String(10), nullable=False, server_default='pending'),
        sa.Column('transaction_reference', sa.String(128), nullable=True),
        sa.Column('received_amount_minor', MinorUnits(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('fiat_currency', sa.String(8), nullable=True),
        sa.Column('fiat_rate', ExactNumeric(24, 8), nullable=True),
        sa.Column('fiat_equivalent', ExactNumeric(24, 2), nullable=True),
        sa.Column('idempotency_key', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        # Constraints
        sa.CheckConstraint("status IN ('pending', 'settled', 'failed')", name='intent_valid_status'),
        sa.CheckConstraint(f"asset IN ({ASSET_VALUES})", name='intent_valid_asset'),
        sa.UniqueConstraint('transaction_reference', name='uq_payment_intents_transaction_reference'),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_intent_user_idempotency_key'),
    )

    # Indexes
    op.create_index('ix_payment_intents_user_id', 'payment_intents', ['user_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('idx_intent_status_created', 'payment_intents', ['status', 'created_at'])
    op.create_index('idx_intent_user_created', 'payment_intents', ['user_id', 'created_at'])

    op.create_table(
        'wallet_balances',
        sa.Column('user_id', sa.Integer(), primary_key=True),
        sa.Column('asset', sa.String(20), primary_key=True),
        sa.Column('balance_minor', MinorUnits(), nullable=False),
        sa.Column('total_deposited_minor', MinorUnits(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(f"asset IN ({ASSET_VALUES})", name='balance_valid_asset'),
    )

    op.create_table(
        'wallet_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('amount_minor', MinorUnits(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('intent_id', sa.String(36), sa.ForeignKey('payment_intents.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint("type IN ('deposit')", name='wallet_tx_valid_type'),
        sa.UniqueConstraint('intent_id', 'type', name='uq_wallet_tx_intent_type'),
    )

    op.create_index('ix_wallet_transactions_id', 'wallet_transactions', ['id'])
    op.create_index('ix_wallet_transactions_user_id', 'wallet_transactions', ['user_id'])
    op.create_index('idx_wallet_tx_user_asset', 'wallet_transactions', ['user_id', 'asset'])


def downgrade() -> None:
    """Drop deposit settlement tables."""
    op.drop_index('idx_wallet_tx_user_asset', table_name='wallet_transactions')
    op.drop_index('ix_wallet_transactions_user_id', table_name='wallet_transactions')
    op.drop_index('ix_wallet_transactions_id', table_name='wallet_transactions')
    op.drop_table('wallet_transactions')

    op.drop_table('wallet_balances')

    op.drop_index('idx_intent_user_created', table_name='payment_intents')
    op.drop_index('idx_intent_status_created', table_name='payment_intents')
    op.drop_index('ix_payment_intents_status', table_name='payment_intents')
    op.drop_index('ix_payment_intents_user_id', table_name='payment_intents')
    op.drop_table('payment_intents')
