"""add_task_connection_id

Revision ID: 1d5a8b3c9e47
Revises: c7e91f04d5a2
Create Date: 2026-09-14 16:21:07.332915

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '1d5a8b3c9e47'
down_revision: Union[str, Sequence[str], None] = 'c7e91f04d5a2'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('tasks', sa.Column('connection_id', sa.String(), nullable=True))
    op.create_index('idx_tasks_connection', 'tasks', ['connection_id'])


def downgrade() -> None:
    op.drop_index('idx_tasks_connection', table_name='tasks')
    with op.batch_alter_table('tasks') as batch_op:
        batch_op.drop_column('connection_id')
