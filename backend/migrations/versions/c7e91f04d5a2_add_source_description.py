"""add_source_description

Revision ID: c7e91f04d5a2
Revises: 8b4d2e6f1a33
Create Date: 2026-09-11 09:03:55.904120

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'c7e91f04d5a2'
down_revision: Union[str, Sequence[str], None] = '8b4d2e6f1a33'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('tasks', sa.Column('source_description', sa.Text(), nullable=True))
    # Imported tasks keep the provider's text apart from local notes.
    op.execute(
        "UPDATE tasks SET source_description = description, description = NULL "
        "WHERE source != 'manual' AND source_description IS NULL "
        "AND description IS NOT NULL AND description != ''"
    )
    op.create_index('idx_time_entries_task', 'time_entries', ['task_id'])


def downgrade() -> None:
    op.drop_index('idx_time_entries_task', table_name='time_entries')
    op.execute(
        "UPDATE tasks SET description = source_description "
        "WHERE source != 'manual' AND description IS NULL AND source_description IS NOT NULL"
    )
    with op.batch_alter_table('tasks') as batch_op:
        batch_op.drop_column('source_description')
