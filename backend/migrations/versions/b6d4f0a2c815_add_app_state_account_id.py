"""add_app_state_account_id

Revision ID: b6d4f0a2c815
Revises: a9c3d7e5f218
Create Date: 2026-10-17 10:02:11.418207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b6d4f0a2c815'
down_revision: Union[str, Sequence[str], None] = 'a9c3d7e5f218'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('app_state', sa.Column('account_id', sa.String(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table('app_state') as batch_op:
        batch_op.drop_column('account_id')
