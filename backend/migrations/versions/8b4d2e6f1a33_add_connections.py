"""add_connections

Revision ID: 8b4d2e6f1a33
Revises: 3f1a9c2e7b10
Create Date: 2026-09-05 14:40:02.551873

"""
from typing import Sequence, Union
import uuid
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8b4d2e6f1a33'
down_revision: Union[str, Sequence[str], None] = '3f1a9c2e7b10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'connections',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('label', sa.String(), nullable=True),
        sa.Column('credential', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('default_bucket_id', sa.String(), nullable=True),
        sa.Column('default_section', sa.String(), nullable=False, server_default='sooner'),
        sa.Column('auto_import', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_synced_at', sa.String(), nullable=True),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.Column('updated_at', sa.String(), nullable=False),
    )
    op.create_index('idx_connections_type', 'connections', ['type'])

    bind = op.get_bind()
    now = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    legacy = bind.execute(sa.text("SELECT type, api_key FROM integration_keys")).fetchall()
    for integration_type, api_key in legacy:
        already = bind.execute(
            sa.text("SELECT 1 FROM connections WHERE type = :type AND credential = :credential"),
            {"type": integration_type, "credential": api_key},
        ).first()
        if already:
            continue
        bind.execute(
            sa.text(
                "INSERT INTO connections (id, type, label, credential, metadata, is_active, "
                "default_section, auto_import, created_at, updated_at) "
                "VALUES (:id, :type, :label, :credential, '{}', 1, 'sooner', 0, :now, :now)"
            ),
            {
                "id": str(uuid.uuid4()),
                "type": integration_type,
                "label": (integration_type or "").capitalize(),
                "credential": api_key,
                "now": now,
            },
        )
    op.drop_table('integration_keys')


def downgrade() -> None:
    op.create_table(
        'integration_keys',
        sa.Column('integration_id', sa.String(), primary_key=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('api_key', sa.Text(), nullable=False),
        sa.Column('created_at', sa.String(), nullable=True),
    )
    op.execute(
        "INSERT INTO integration_keys (integration_id, type, api_key, created_at) "
        "SELECT id, type, credential, created_at FROM connections WHERE credential IS NOT NULL"
    )
    op.drop_index('idx_connections_type', table_name='connections')
    op.drop_table('connections')
