"""normalize_nullable_foreign_keys

Revision ID: e2f6c8a1b904
Revises: 1d5a8b3c9e47
Create Date: 2026-09-20 11:47:30.006218

"""
from typing import Sequence, Union
import json
import re

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'e2f6c8a1b904'
down_revision: Union[str, Sequence[str], None] = '1d5a8b3c9e47'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
NULL_SENTINELS = {"", "global", "__none__", "none", "null"}
PAYLOAD_KEYS = ("bucket_id", "connection_id", "integration_id", "default_bucket_id", "target_bucket_id")

# (table, primary key, nullable uuid columns)
COLUMNS = (
    ("tasks", "id", ("bucket_id", "connection_id")),
    ("import_rules", "id", ("target_bucket_id",)),
    ("connections", "id", ("default_bucket_id",)),
)


def normalize_nullable_uuid(value):
    if value is None or not isinstance(value, str):
        return None
    trimmed = value.strip()
    if trimmed.lower() in NULL_SENTINELS:
        return None
    return trimmed if UUID_RE.match(trimmed) else None


def upgrade() -> None:
    bind = op.get_bind()
    for table, pk, columns in COLUMNS:
        for column in columns:
            rows = bind.execute(
                sa.text(f"SELECT {pk}, {column} FROM {table} WHERE {column} IS NOT NULL")
            ).fetchall()
            for row_id, value in rows:
                cleaned = normalize_nullable_uuid(value)
                if cleaned != value:
                    bind.execute(
                        sa.text(f"UPDATE {table} SET {column} = :value WHERE {pk} = :id"),
                        {"value": cleaned, "id": row_id},
                    )

    outbox_rows = bind.execute(sa.text("SELECT id, payload FROM outbox")).fetchall()
    for row_id, raw_payload in outbox_rows:
        try:
            payload = json.loads(raw_payload) if isinstance(raw_payload, str) else raw_payload
        except ValueError:
            continue
        if not isinstance(payload, dict):
            continue
        changed = False
        for key in PAYLOAD_KEYS:
            if key not in payload:
                continue
            cleaned = normalize_nullable_uuid(payload[key])
            if cleaned != payload[key]:
                payload[key] = cleaned
                changed = True
        if changed:
            bind.execute(
                sa.text("UPDATE outbox SET payload = :payload WHERE id = :id"),
                {"payload": json.dumps(payload), "id": row_id},
            )


def downgrade() -> None:
    # Data cleanup only; nothing to restore.
    pass
