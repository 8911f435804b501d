"""initial_local_schema

Revision ID: 3f1a9c2e7b10
Revises: 
Create Date: 2026-09-02 10:12:41.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'buckets',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('icon', sa.String(), nullable=True),
        sa.Column('color', sa.String(), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.Column('updated_at', sa.String(), nullable=False),
    )
    op.create_index('idx_buckets_owner_position', 'buckets', ['owner_id', 'position'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('bucket_id', sa.String(), sa.ForeignKey('buckets.id', ondelete='SET NULL'), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('section', sa.String(), nullable=False, server_default='sooner'),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('source', sa.String(), nullable=False, server_default='manual'),
        sa.Column('source_id', sa.String(), nullable=True),
        sa.Column('source_url', sa.String(), nullable=True),
        sa.Column('source_metadata', sa.JSON(), nullable=True),
        sa.Column('estimate_minutes', sa.Integer(), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_at', sa.String(), nullable=True),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.Column('updated_at', sa.String(), nullable=False),
        sa.UniqueConstraint('owner_id', 'source_id', name='uq_tasks_owner_source'),
    )
    op.create_index('idx_tasks_bucket_section_position', 'tasks', ['bucket_id', 'section', 'position'])
    op.create_index('idx_tasks_owner_status', 'tasks', ['owner_id', 'status'])

    op.create_table(
        'sessions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), nullable=True),
        sa.Column('started_at', sa.String(), nullable=False),
        sa.Column('ended_at', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('device_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.String(), nullable=False),
    )
    op.create_index('idx_sessions_owner_started', 'sessions', ['owner_id', 'started_at'])

    op.create_table(
        'time_entries',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('session_id', sa.String(), sa.ForeignKey('sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.String(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('started_at', sa.String(), nullable=False),
        sa.Column('ended_at', sa.String(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('device_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.CheckConstraint(
            "(ended_at IS NULL AND duration_seconds IS NULL) OR "
            "(ended_at IS NOT NULL AND duration_seconds IS NOT NULL)",
            name='ck_time_entries_closed_pair',
        ),
    )
    op.create_index('idx_time_entries_session', 'time_entries', ['session_id'])

    op.create_table(
        'import_rules',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('integration_type', sa.String(), nullable=False),
        sa.Column('source_filter', sa.JSON(), nullable=False),
        sa.Column('target_bucket_id', sa.String(), sa.ForeignKey('buckets.id', ondelete='SET NULL'), nullable=True),
        sa.Column('target_section', sa.String(), nullable=False, server_default='sooner'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.Column('updated_at', sa.String(), nullable=False),
    )

    op.create_table(
        'integration_keys',
        sa.Column('integration_id', sa.String(), primary_key=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('api_key', sa.Text(), nullable=False),
        sa.Column('created_at', sa.String(), nullable=True),
    )

    op.create_table(
        'outbox',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('table_name', sa.String(), nullable=False),
        sa.Column('operation', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.String(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.UniqueConstraint('seq', name='uq_outbox_seq'),
    )
    op.create_index('idx_outbox_status_seq', 'outbox', ['status', 'seq'])
    op.create_index('idx_outbox_entity', 'outbox', ['table_name', 'entity_id'])

    op.create_table(
        'app_state',
        sa.Column('key', sa.String(), primary_key=True),
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('active_session_id', sa.String(), nullable=True),
        sa.Column('active_time_entry_id', sa.String(), nullable=True),
        sa.Column('active_task_id', sa.String(), nullable=True),
        sa.Column('timer_started_at', sa.String(), nullable=True),
        sa.Column('timer_mode', sa.String(), nullable=True),
        sa.Column('fixed_minutes', sa.Integer(), nullable=True),
        sa.Column('elapsed_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('app_state')
    op.drop_index('idx_outbox_entity', table_name='outbox')
    op.drop_index('idx_outbox_status_seq', table_name='outbox')
    op.drop_table('outbox')
    op.drop_table('integration_keys')
    op.drop_table('import_rules')
    op.drop_index('idx_time_entries_session', table_name='time_entries')
    op.drop_table('time_entries')
    op.drop_index('idx_sessions_owner_started', table_name='sessions')
    op.drop_table('sessions')
    op.drop_index('idx_tasks_owner_status', table_name='tasks')
    op.drop_index('idx_tasks_bucket_section_position', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('idx_buckets_owner_position', table_name='buckets')
    op.drop_table('buckets')
