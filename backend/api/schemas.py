from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, Any, List
from locu.models import Section, TimerMode


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class BucketCreate(BaseModel):
    name: str = Field(min_length=1)
    icon: Optional[str] = None
    color: Optional[str] = None

class BucketUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    icon: Optional[str] = None
    color: Optional[str] = None

class BucketReorder(BaseModel):
    position: int = Field(ge=0)

class BucketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    position: int
    is_default: bool

class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    bucket_id: str
    section: Section = Section.sooner

class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    estimate_minutes: Optional[int] = Field(None, ge=0)
    waiting_for_reason: Optional[str] = None

class TaskMove(BaseModel):
    bucket_id: Optional[str] = None
    section: Optional[Section] = None
    position: Optional[int] = Field(None, ge=0)

    @field_validator("bucket_id", mode="before")
    @classmethod
    def normalize_bucket(cls, value):
        return _blank_to_none(value)

class TaskMoveBatch(BaseModel):
    task_ids: List[str] = Field(min_length=1)
    bucket_id: str
    section: Section
    insert_position: int = Field(0, ge=0)

class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    bucket_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    section: str
    status: str
    source: str
    source_id: Optional[str] = None
    source_url: Optional[str] = None
    source_description: Optional[str] = None
    source_project: Optional[str] = None
    connection_id: Optional[str] = None
    estimate_minutes: Optional[int] = None
    waiting_for_reason: Optional[str] = None
    position: int
    completed_at: Optional[str] = None

class WritebackResponse(BaseModel):
    ok: bool
    task: Optional[TaskOut] = None
    error: Optional[str] = None

class EstimateResponse(BaseModel):
    suggested_minutes: Optional[int] = None
    sample_count: int = 0
    source: Optional[str] = None

class TimerStartRequest(BaseModel):
    task_id: str
    mode: TimerMode = TimerMode.open
    fixed_minutes: Optional[int] = Field(None, gt=0)

class TimerSwitchRequest(BaseModel):
    task_id: str

class TimerStateResponse(BaseModel):
    is_running: bool
    session_id: Optional[str] = None
    time_entry_id: Optional[str] = None
    task_id: Optional[str] = None
    started_at: Optional[str] = None
    mode: str = TimerMode.open.value
    fixed_minutes: Optional[int] = None
    elapsed_seconds: int = 0

class ReconcileResponse(BaseModel):
    outcome: str
    session_id: Optional[str] = None
    elapsed_seconds: int = 0
    candidates: int = 0
    ambiguous: bool = False
    repaired_entries: int = 0
    closed_sessions: List[str] = Field(default_factory=list)

class ImportRuleCreate(BaseModel):
    integration_type: str
    source_id: str = Field(min_length=1)
    source_name: Optional[str] = None
    target_bucket_id: str
    target_section: Section = Section.sooner

class ImportRuleUpdate(BaseModel):
    target_bucket_id: Optional[str] = None
    target_section: Optional[Section] = None
    is_active: Optional[bool] = None

    @field_validator("target_bucket_id", mode="before")
    @classmethod
    def normalize_bucket(cls, value):
        return _blank_to_none(value)

class ConnectionCreate(BaseModel):
    type: str
    credential: str = Field(min_length=1)
    label: Optional[str] = None

class ConnectionUpdate(BaseModel):
    label: Optional[str] = None
    credential: Optional[str] = None
    default_bucket_id: Optional[str] = None
    default_section: Optional[Section] = None
    auto_import: Optional[bool] = None

    @field_validator("default_bucket_id", mode="before")
    @classmethod
    def normalize_bucket(cls, value):
        return _blank_to_none(value)

class ConnectionOut(BaseModel):
    """Connection without its credential."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    label: Optional[str] = None
    is_active: bool
    default_bucket_id: Optional[str] = None
    default_section: str
    auto_import: bool
    last_synced_at: Optional[str] = None
    has_credential: bool = False

class InboxItemIn(BaseModel):
    id: str
    connection_id: Optional[str] = None
    source_type: str
    source_id: str
    title: str
    subtitle: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    url: Optional[str] = None

    @field_validator("connection_id", mode="before")
    @classmethod
    def normalize_connection(cls, value):
        return _blank_to_none(value)

class InboxImportRequest(BaseModel):
    item: InboxItemIn
    bucket_id: str
    section: Section = Section.sooner

class ImportResultResponse(BaseModel):
    imported: int
    auto_routed: int
    skipped: int

class ConnectionSyncResponse(BaseModel):
    connection_id: str
    result: ImportResultResponse
    inbox_items: List[InboxItemIn] = Field(default_factory=list)
    error: Optional[str] = None

class DrainReportResponse(BaseModel):
    sent: int = 0
    retried: int = 0
    dead: int = 0
    deferred: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

class SyncStatusResponse(BaseModel):
    owner_id: str
    is_anonymous: bool
    remote_configured: bool
    pending: int
    dead_letters: int
    schema_revision: Optional[str] = None

class SyncNowResponse(BaseModel):
    pulled: Dict[str, int] = Field(default_factory=dict)
    drained: DrainReportResponse
    reconcile: Optional[ReconcileResponse] = None

class SignInRequest(BaseModel):
    account_id: str = Field(min_length=1)
