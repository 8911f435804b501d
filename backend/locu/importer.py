import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from locu.clock import Clock, to_iso, utc_now
from locu.errors import EntityNotFound
from locu.identity import IdentityResolver
from locu.models import Bucket, ImportRule, IntegrationConnection, Section, Task, TaskStatus
from locu.outbox import Outbox
from locu.store import LocalStore

logger = logging.getLogger(__name__)

ATTIO_ALL_LISTS = "all"


@dataclass
class NormalizedItem:
    """Provider item in the shape every integration maps to."""
    id: str
    connection_id: Optional[str]
    source_type: str
    source_id: str
    title: str
    subtitle: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None


# --- Source filters ---

class _FilterBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LinearTeamFilter(_FilterBase):
    type: Literal["linear"] = "linear"
    team_id: str = Field(alias="teamId")
    team_name: Optional[str] = Field(default=None, alias="teamName")


class TodoistProjectFilter(_FilterBase):
    type: Literal["todoist"] = "todoist"
    project_id: str = Field(alias="projectId")
    project_name: Optional[str] = Field(default=None, alias="projectName")


class AttioListFilter(_FilterBase):
    type: Literal["attio"] = "attio"
    list_id: str = Field(alias="listId")
    list_name: Optional[str] = Field(default=None, alias="listName")


SourceFilter = Annotated[
    Union[LinearTeamFilter, TodoistProjectFilter, AttioListFilter],
    Field(discriminator="type"),
]
_source_filter_adapter = TypeAdapter(SourceFilter)


def parse_source_filter(integration_type: str, raw: Any) -> SourceFilter:
    """Parse a stored filter; older rows carry no ``type`` tag and take it from the rule."""
    data = dict(raw or {})
    data.setdefault("type", integration_type)
    return _source_filter_adapter.validate_python(data)


def build_source_filter(integration_type: str, source_id: str, source_name: Optional[str] = None) -> SourceFilter:
    if integration_type == "linear":
        return LinearTeamFilter(team_id=source_id, team_name=source_name)
    if integration_type == "todoist":
        return TodoistProjectFilter(project_id=source_id, project_name=source_name)
    if integration_type == "attio":
        return AttioListFilter(list_id=source_id, list_name=source_name)
    raise ValueError(f"unsupported integration type: {integration_type}")


def matches_source_filter(source_filter: SourceFilter, metadata: Dict[str, Any]) -> bool:
    if isinstance(source_filter, LinearTeamFilter):
        return metadata.get("teamId") == source_filter.team_id
    if isinstance(source_filter, TodoistProjectFilter):
        return metadata.get("projectId") == source_filter.project_id
    if isinstance(source_filter, AttioListFilter):
        return source_filter.list_id == ATTIO_ALL_LISTS or metadata.get("listId") == source_filter.list_id
    raise TypeError(f"unhandled source filter {type(source_filter).__name__}")


def find_matching_rule(item: NormalizedItem, rules: List[ImportRule]) -> Optional[ImportRule]:
    for rule in rules:
        if not rule.is_active or rule.integration_type != item.source_type:
            continue
        try:
            source_filter = parse_source_filter(rule.integration_type, rule.source_filter)
        except ValueError as exc:
            logger.warning(f"Ignoring import rule {rule.id} with unreadable filter: {exc}")
            continue
        if matches_source_filter(source_filter, item.metadata or {}):
            return rule
    return None


def _non_empty(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def derive_source_project(item: NormalizedItem) -> Optional[str]:
    metadata = item.metadata or {}
    if item.source_type in ("linear", "todoist"):
        return _non_empty(metadata.get("projectName"))
    if item.source_type == "attio":
        for key in ("projectName", "listName", "workspaceName", "workspaceId"):
            label = _non_empty(metadata.get(key))
            if label:
                return label
    return None


# --- Applying rules ---

class SkipReason(str, Enum):
    duplicate = "duplicate"
    no_target_bucket = "no_target_bucket"


@dataclass
class ImportResult:
    imported: int = 0
    auto_routed: int = 0
    skipped: int = 0
    unmatched: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)

    def skip(self, reason: SkipReason) -> None:
        self.skipped += 1
        self.skip_reasons[reason.value] = self.skip_reasons.get(reason.value, 0) + 1

    def to_dict(self) -> Dict[str, int]:
        return {"imported": self.imported, "autoRouted": self.auto_routed, "skipped": self.skipped}


class ImportEngine:
    def __init__(self, store: LocalStore, outbox: Outbox, identity: IdentityResolver, clock: Clock = utc_now):
        self.store = store
        self.outbox = outbox
        self.identity = identity
        self.clock = clock

    async def existing_source_ids(self, session: AsyncSession, source_ids: List[str]) -> set[str]:
        if not source_ids:
            return set()
        rows = await session.execute(
            select(Task.source_id).where(
                Task.owner_id == self.identity.owner_id,
                Task.source_id.in_(source_ids),
            )
        )
        return {row[0] for row in rows}

    async def _rules(self, session: AsyncSession) -> List[ImportRule]:
        return list(
            (
                await session.execute(
                    select(ImportRule)
                    .where(ImportRule.owner_id == self.identity.owner_id, ImportRule.is_active.is_(True))
                    .order_by(ImportRule.created_at, ImportRule.id)
                )
            ).scalars().all()
        )

    async def _append_position(self, session: AsyncSession, bucket_id: str, section: str) -> int:
        return (
            await session.execute(
                select(func.count()).select_from(Task).where(
                    Task.owner_id == self.identity.owner_id,
                    Task.bucket_id == bucket_id,
                    Task.section == section,
                    Task.status == TaskStatus.active.value,
                )
            )
        ).scalar() or 0

    async def _insert_task(self, session: AsyncSession, item: NormalizedItem, bucket_id: str,
                           section: str, known_connections: set[str]) -> Task:
        now = to_iso(self.clock())
        metadata = dict(item.metadata or {})
        connection_id = item.connection_id if item.connection_id in known_connections else None
        task = Task(
            id=str(uuid.uuid4()),
            owner_id=self.identity.owner_id,
            bucket_id=bucket_id,
            title=item.title,
            description=None,
            section=section,
            status=TaskStatus.active.value,
            source=item.source_type,
            source_id=item.source_id,
            source_url=item.url,
            source_description=_non_empty(metadata.get("description")),
            source_project=derive_source_project(item),
            source_metadata=metadata,
            connection_id=connection_id,
            position=await self._append_position(session, bucket_id, section),
            created_at=now,
            updated_at=now,
        )
        session.add(task)
        await session.flush()
        await self.outbox.enqueue(session, "tasks", "insert", task.to_dict())
        return task

    async def _known_connections(self, session: AsyncSession) -> set[str]:
        return set((await session.execute(select(IntegrationConnection.id))).scalars().all())

    async def apply_import_rules(self, items: List[NormalizedItem]) -> ImportResult:
        """Route new provider items into buckets by the first matching active rule.

        Items already present (by source id) are skipped, unmatched items are
        left for manual triage, and the whole batch commits as one unit.
        """
        result = ImportResult()
        async with self.store.transaction() as session:
            rules = await self._rules(session)
            seen = await self.existing_source_ids(session, [item.source_id for item in items])
            bucket_ids = set((await session.execute(
                select(Bucket.id).where(Bucket.owner_id == self.identity.owner_id)
            )).scalars().all())
            known_connections = await self._known_connections(session)

            for item in items:
                if item.source_id in seen:
                    result.skip(SkipReason.duplicate)
                    continue

                rule = find_matching_rule(item, rules)
                if rule is None:
                    result.unmatched += 1
                    continue

                if not rule.target_bucket_id or rule.target_bucket_id not in bucket_ids:
                    result.skip(SkipReason.no_target_bucket)
                    continue

                await self._insert_task(session, item, rule.target_bucket_id, rule.target_section, known_connections)
                seen.add(item.source_id)
                result.imported += 1
                result.auto_routed += 1

        logger.info(
            "Import applied: imported=%s auto_routed=%s skipped=%s unmatched=%s",
            result.imported, result.auto_routed, result.skipped, result.unmatched,
        )
        return result

    async def import_item(self, item: NormalizedItem, bucket_id: str, section: str = Section.sooner.value) -> Optional[Task]:
        """Manually import one inbox item; returns None if it already exists."""
        Section(section)
        async with self.store.transaction() as session:
            bucket = await session.get(Bucket, bucket_id)
            if bucket is None or bucket.owner_id != self.identity.owner_id:
                raise EntityNotFound("bucket", bucket_id)
            if await self.existing_source_ids(session, [item.source_id]):
                return None
            return await self._insert_task(session, item, bucket_id, section, await self._known_connections(session))

    async def filter_unimported(self, items: List[NormalizedItem]) -> List[NormalizedItem]:
        async with self.store.transaction() as session:
            seen = await self.existing_source_ids(session, [item.source_id for item in items])
        return [item for item in items if item.source_id not in seen]


# --- Rule management ---

class ImportRuleService:
    def __init__(self, store: LocalStore, outbox: Outbox, identity: IdentityResolver, clock: Clock = utc_now):
        self.store = store
        self.outbox = outbox
        self.identity = identity
        self.clock = clock

    async def list(self, active_only: bool = False) -> List[ImportRule]:
        async with self.store.transaction() as session:
            stmt = select(ImportRule).where(ImportRule.owner_id == self.identity.owner_id)
            if active_only:
                stmt = stmt.where(ImportRule.is_active.is_(True))
            return list((await session.execute(stmt.order_by(ImportRule.created_at, ImportRule.id))).scalars().all())

    async def add(self, integration_type: str, source_id: str, target_bucket_id: str,
                  target_section: str = Section.sooner.value, source_name: Optional[str] = None) -> ImportRule:
        source_filter = build_source_filter(integration_type, source_id, source_name)
        Section(target_section)
        async with self.store.transaction() as session:
            bucket = await session.get(Bucket, target_bucket_id)
            if bucket is None or bucket.owner_id != self.identity.owner_id:
                raise EntityNotFound("bucket", target_bucket_id)
            now = to_iso(self.clock())
            rule = ImportRule(
                id=str(uuid.uuid4()),
                owner_id=self.identity.owner_id,
                integration_type=integration_type,
                source_filter=source_filter.model_dump(by_alias=True, exclude_none=True),
                target_bucket_id=target_bucket_id,
                target_section=target_section,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            session.add(rule)
            await session.flush()
            await self.outbox.enqueue(session, "import_rules", "insert", rule.to_dict())
            return rule

    async def update(self, rule_id: str, target_bucket_id: Optional[str] = None,
                     target_section: Optional[str] = None, is_active: Optional[bool] = None) -> ImportRule:
        async with self.store.transaction() as session:
            rule = await session.get(ImportRule, rule_id)
            if rule is None or rule.owner_id != self.identity.owner_id:
                raise EntityNotFound("import_rule", rule_id)
            changes: Dict[str, Any] = {}
            if target_bucket_id is not None:
                if await session.get(Bucket, target_bucket_id) is None:
                    raise EntityNotFound("bucket", target_bucket_id)
                changes["target_bucket_id"] = target_bucket_id
            if target_section is not None:
                changes["target_section"] = Section(target_section).value
            if is_active is not None:
                changes["is_active"] = is_active
            if not changes:
                return rule
            changes["updated_at"] = to_iso(self.clock())
            for key, value in changes.items():
                setattr(rule, key, value)
            await self.outbox.enqueue(session, "import_rules", "update", {"id": rule.id, **changes})
            return rule

    async def delete(self, rule_id: str) -> bool:
        async with self.store.transaction() as session:
            rule = await session.get(ImportRule, rule_id)
            if rule is None or rule.owner_id != self.identity.owner_id:
                return False
            await session.delete(rule)
            await self.outbox.enqueue(session, "import_rules", "delete", {"id": rule_id})
            return True
