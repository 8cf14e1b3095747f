"""signer nonces

Revision ID: 9c41e7a2d0f3
Revises: 5b2f0c9d81aa
Create Date: 2026-10-19 10:30:12.584107

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9c41e7a2d0f3'
down_revision: Union[str, Sequence[str], None] = '5b2f0c9d81aa'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'signer_nonces',
        sa.Column('address', sa.String(), nullable=False),
        sa.Column('nonce', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('address')
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('signer_nonces')
