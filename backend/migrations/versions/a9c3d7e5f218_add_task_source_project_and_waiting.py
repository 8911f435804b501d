"""add_task_source_project_and_waiting

Revision ID: a9c3d7e5f218
Revises: e2f6c8a1b904
Create Date: 2026-10-01 08:15:49.770342

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a9c3d7e5f218'
down_revision: Union[str, Sequence[str], None] = 'e2f6c8a1b904'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('tasks', sa.Column('source_project', sa.String(), nullable=True))
    op.add_column('tasks', sa.Column('waiting_for_reason', sa.Text(), nullable=True))
    # Provider label for imported rows that already carry it in their metadata.
    op.execute(
        "UPDATE tasks SET source_project = COALESCE("
        "json_extract(source_metadata, '$.projectName'), "
        "json_extract(source_metadata, '$.teamName'), "
        "json_extract(source_metadata, '$.listName')) "
        "WHERE source_project IS NULL AND source_metadata IS NOT NULL "
        "AND json_valid(source_metadata)"
    )


def downgrade() -> None:
    with op.batch_alter_table('tasks') as batch_op:
        batch_op.drop_column('waiting_for_reason')
        batch_op.drop_column('source_project')
