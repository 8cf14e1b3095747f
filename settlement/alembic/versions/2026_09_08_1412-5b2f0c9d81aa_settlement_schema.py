"""settlement schema

Revision ID: 5b2f0c9d81aa
Revises:
Create Date: 2026-09-08 14:12:47.120334

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b2f0c9d81aa'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('address', sa.String(), nullable=False),
        sa.Column('balance', sa.Numeric(precision=20, scale=2), nullable=False),
        sa.Column('provider', sa.Enum('gmail', 'apple', 'wallet', native_enum=False), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('address')
    )
    op.create_index(op.f('ix_users_name'), 'users', ['name'], unique=False)

    op.create_table(
        'cards',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('external_cardholder_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('brand', sa.String(), nullable=False),
        sa.Column('last4', sa.String(length=4), nullable=False),
        sa.Column('status', sa.Enum('active', 'inactive', 'deleted', native_enum=False), nullable=False),
        sa.Column('spending_limit', sa.Numeric(precision=20, scale=2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id'),
        sa.UniqueConstraint('user_id')
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('card_id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('status', sa.Enum('started', 'completed', 'cancelled', native_enum=False), nullable=False),
        sa.Column('amount', sa.Numeric(precision=78, scale=0), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('merchant_name', sa.String(), nullable=False),
        sa.Column('merchant_amount', sa.Numeric(precision=78, scale=0), nullable=False),
        sa.Column('merchant_currency', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['card_id'], ['cards.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id')
    )
    op.create_index(op.f('ix_payments_card_id'), 'payments', ['card_id'], unique=False)

    op.create_table(
        'executions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=False),
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=78, scale=0), nullable=False),
        sa.Column('decimals', sa.Integer(), nullable=False),
        sa.Column('tx_hash', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id'),
        sa.UniqueConstraint('tx_hash')
    )

    op.create_table(
        'transfers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=78, scale=0), nullable=False),
        sa.Column('decimals', sa.Integer(), nullable=False),
        sa.Column('sender', sa.String(), nullable=False),
        sa.Column('receiver', sa.String(), nullable=False),
        sa.Column('tx_hash', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash')
    )
    op.create_index(op.f('ix_transfers_user_id'), 'transfers', ['user_id'], unique=False)

    op.create_table(
        'settlement_attempts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=False),
        sa.Column(
            'status',
            sa.Enum('pending_execution', 'executed', 'failed', 'unknown', native_enum=False),
            nullable=False
        ),
        sa.Column('tx_hash', sa.String(), nullable=True),
        sa.Column('error', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id')
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('settlement_attempts')
    op.drop_index(op.f('ix_transfers_user_id'), table_name='transfers')
    op.drop_table('transfers')
    op.drop_table('executions')
    op.drop_index(op.f('ix_payments_card_id'), table_name='payments')
    op.drop_table('payments')
    op.drop_table('cards')
    op.drop_index(op.f('ix_users_name'), table_name='users')
    op.drop_table('users')
