"""Track reference age and last check of payment intents

- reference_attached_at: when the transaction reference was bound; a
  reference never seen on chain fails the intent after REFERENCE_TTL_MINUTES
- last_checked_at: the poller takes the least recently checked intents
  first, so unresolvable references cannot starve newer ones

Revision ID: 1b2c3d4e5f6a
Revises: 0a1b2c3d4e5f
Create Date: 2026-10-20 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '1b2c3d4e5f6a'
down_revision: Union[str, Sequence[str], None] = '0a1b2c3d4e5f'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade: add reference_attached_at and last_checked_at."""
    with op.batch_alter_table('payment_intents') as batch_op:
        batch_op.add_column(sa.Column('reference_attached_at', sa.DateTime(), nullable=True))
        batch_op.add_column(sa.Column('last_checked_at', sa.DateTime(), nullable=True))

    # Existing bound intents: treat the last update as both attach and check time
    op.execute(
        "UPDATE payment_intents SET reference_attached_at = updated_at, last_checked_at = updated_at "
        "WHERE transaction_reference IS NOT NULL"
    )

    op.create_index('idx_intent_status_checked', 'payment_intents', ['status', 'last_checked_at'])


def downgrade() -> None:
    """Downgrade: drop reference tracking columns."""
    op.drop_index('idx_intent_status_checked', table_name='payment_intents')

    with op.batch_alter_table('payment_intents') as batch_op:
        batch_op.drop_column('last_checked_at')
        batch_op.drop_column('reference_attached_at')
