from enum import Enum as PyEnum
from typing import Any, Dict

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, ForeignKey,
    Index, UniqueConstraint, CheckConstraint, JSON, inspect
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# --- Enums ---

class TaskStatus(str, PyEnum):
    active = "active"
    completed = "completed"
    archived = "archived"

class Section(str, PyEnum):
    today = "today"
    sooner = "sooner"
    later = "later"

class TaskSource(str, PyEnum):
    manual = "manual"
    linear = "linear"
    todoist = "todoist"
    attio = "attio"

class OutboxOperation(str, PyEnum):
    insert = "insert"
    update = "update"
    delete = "delete"

class OutboxStatus(str, PyEnum):
    pending = "pending"
    dead = "dead"

class TimerMode(str, PyEnum):
    open = "open"
    fixed = "fixed"


class RowMixin:
    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for attr in inspect(self).mapper.column_attrs:
            value = getattr(self, attr.key)
            if isinstance(value, PyEnum):
                value = value.value
            out[attr.columns[0].name] = value
        return out

# --- Synced entity mirrors ---

class Bucket(RowMixin, Base):
    __tablename__ = "buckets"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    icon = Column(String, nullable=True)
    color = Column(String, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    __table_args__ = (
        Index("idx_buckets_owner_position", "owner_id", "position"),
    )

class Task(RowMixin, Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    bucket_id = Column(String, ForeignKey("buckets.id", ondelete="SET NULL"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    section = Column(String, nullable=False, default=Section.sooner.value)
    status = Column(String, nullable=False, default=TaskStatus.active.value)
    source = Column(String, nullable=False, default=TaskSource.manual.value)
    source_id = Column(String, nullable=True)
    source_url = Column(String, nullable=True)
    source_description = Column(Text, nullable=True)
    source_project = Column(String, nullable=True)
    source_metadata = Column(JSON, nullable=True)
    connection_id = Column(String, nullable=True)
    estimate_minutes = Column(Integer, nullable=True)
    waiting_for_reason = Column(Text, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    completed_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "source_id", name="uq_tasks_owner_source"),
        Index("idx_tasks_bucket_section_position", "bucket_id", "section", "position"),
        Index("idx_tasks_owner_status", "owner_id", "status"),
        Index("idx_tasks_connection", "connection_id"),
    )

class Session(RowMixin, Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    task_id = Column(String, nullable=True)
    started_at = Column(String, nullable=False)
    ended_at = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    device_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        Index("idx_sessions_owner_started", "owner_id", "started_at"),
    )

class TimeEntry(RowMixin, Base):
    __tablename__ = "time_entries"

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    task_id = Column(String, nullable=False)
    owner_id = Column(String, nullable=False)
    started_at = Column(String, nullable=False)
    ended_at = Column(String, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    device_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(ended_at IS NULL AND duration_seconds IS NULL) OR "
            "(ended_at IS NOT NULL AND duration_seconds IS NOT NULL)",
            name="ck_time_entries_closed_pair",
        ),
        Index("idx_time_entries_session", "session_id"),
        Index("idx_time_entries_task", "task_id"),
    )

class ImportRule(RowMixin, Base):
    __tablename__ = "import_rules"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    integration_type = Column(String, nullable=False)
    source_filter = Column(JSON, nullable=False)
    target_bucket_id = Column(String, ForeignKey("buckets.id", ondelete="SET NULL"), nullable=True)
    target_section = Column(String, nullable=False, default=Section.sooner.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

# --- Local-only tables ---

class IntegrationConnection(RowMixin, Base):
    __tablename__ = "connections"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    label = Column(String, nullable=True)
    credential = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    default_bucket_id = Column(String, nullable=True)
    default_section = Column(String, nullable=False, default=Section.sooner.value)
    auto_import = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    __table_args__ = (
        Index("idx_connections_type", "type"),
    )

class OutboxItem(RowMixin, Base):
    __tablename__ = "outbox"

    id = Column(String, primary_key=True)
    seq = Column(Integer, nullable=False)
    table_name = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(String, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=OutboxStatus.pending.value)

    __table_args__ = (
        UniqueConstraint("seq", name="uq_outbox_seq"),
        Index("idx_outbox_status_seq", "status", "seq"),
        Index("idx_outbox_entity", "table_name", "entity_id"),
    )

class AppState(RowMixin, Base):
    __tablename__ = "app_state"

    key = Column(String, primary_key=True)
    device_id = Column(String, nullable=False)
    account_id = Column(String, nullable=True)
    active_session_id = Column(String, nullable=True)
    active_time_entry_id = Column(String, nullable=True)
    active_task_id = Column(String, nullable=True)
    timer_started_at = Column(String, nullable=True)
    timer_mode = Column(String, nullable=True)
    fixed_minutes = Column(Integer, nullable=True)
    elapsed_seconds = Column(Integer, nullable=False, default=0)
    updated_at = Column(String, nullable=True)
