import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from locu.clock import Clock, to_iso, utc_now
from locu.errors import EntityNotFound, ProviderError
from locu.identity import IdentityResolver
from locu.models import Bucket, IntegrationConnection, Section, Task, TaskSource, TaskStatus
from locu.outbox import Outbox
from locu.providers import ProviderRegistry
from locu.store import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class WritebackResult:
    ok: bool
    task: Optional[Task] = None
    error: Optional[str] = None


class TaskService:
    def __init__(self, store: LocalStore, outbox: Outbox, identity: IdentityResolver,
                 providers: Optional[ProviderRegistry] = None, clock: Clock = utc_now):
        self.store = store
        self.outbox = outbox
        self.identity = identity
        self.providers = providers or ProviderRegistry()
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock())

    async def _get(self, session: AsyncSession, task_id: str) -> Task:
        task = await session.get(Task, task_id)
        if task is None or task.owner_id != self.identity.owner_id:
            raise EntityNotFound("task", task_id)
        return task

    async def _require_bucket(self, session: AsyncSession, bucket_id: str) -> Bucket:
        bucket = await session.get(Bucket, bucket_id)
        if bucket is None or bucket.owner_id != self.identity.owner_id:
            raise EntityNotFound("bucket", bucket_id)
        return bucket

    async def _apply(self, session: AsyncSession, task: Task, changes: Dict[str, Any]) -> Task:
        changes["updated_at"] = self._now()
        for key, value in changes.items():
            setattr(task, key, value)
        await self.outbox.enqueue(session, "tasks", "update", {"id": task.id, **changes})
        return task

    async def _container(self, session: AsyncSession, bucket_id: Optional[str], section: str,
                         exclude: Optional[set] = None) -> List[Task]:
        stmt = select(Task).where(
            Task.owner_id == self.identity.owner_id,
            Task.bucket_id == bucket_id,
            Task.section == section,
            Task.status == TaskStatus.active.value,
        )
        if exclude:
            stmt = stmt.where(Task.id.not_in(exclude))
        return list((await session.execute(stmt.order_by(Task.position, Task.created_at))).scalars().all())

    async def add(self, title: str, bucket_id: str, section: str = Section.sooner.value) -> Task:
        section = Section(section).value
        async with self.store.transaction() as session:
            await self._require_bucket(session, bucket_id)
            siblings = (
                await session.execute(
                    select(func.count()).select_from(Task).where(
                        Task.owner_id == self.identity.owner_id,
                        Task.bucket_id == bucket_id,
                        Task.section == section,
                        Task.status == TaskStatus.active.value,
                    )
                )
            ).scalar() or 0
            now = self._now()
            task = Task(
                id=str(uuid.uuid4()),
                owner_id=self.identity.owner_id,
                bucket_id=bucket_id,
                title=title,
                section=section,
                status=TaskStatus.active.value,
                source=TaskSource.manual.value,
                position=siblings,
                created_at=now,
                updated_at=now,
            )
            session.add(task)
            await session.flush()
            await self.outbox.enqueue(session, "tasks", "insert", task.to_dict())
            return task

    async def get(self, task_id: str) -> Task:
        async with self.store.transaction() as session:
            return await self._get(session, task_id)

    async def list(self, bucket_id: Optional[str] = None, section: Optional[str] = None,
                   status: str = TaskStatus.active.value) -> List[Task]:
        async with self.store.transaction() as session:
            stmt = select(Task).where(Task.owner_id == self.identity.owner_id, Task.status == status)
            if bucket_id is not None:
                stmt = stmt.where(Task.bucket_id == bucket_id)
            if section is not None:
                stmt = stmt.where(Task.section == Section(section).value)
            return list((await session.execute(stmt.order_by(Task.position, Task.created_at))).scalars().all())

    async def update(self, task_id: str, **fields: Any) -> Task:
        allowed = {"title", "description", "estimate_minutes", "waiting_for_reason"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"fields not editable: {sorted(unknown)}")
        async with self.store.transaction() as session:
            task = await self._get(session, task_id)
            if not fields:
                return task
            return await self._apply(session, task, dict(fields))

    async def archive(self, task_id: str) -> Task:
        async with self.store.transaction() as session:
            task = await self._get(session, task_id)
            return await self._apply(session, task, {"status": TaskStatus.archived.value})

    async def _close_gaps(self, session: AsyncSession, bucket_id: Optional[str], section: str,
                          exclude: set) -> None:
        for index, task in enumerate(await self._container(session, bucket_id, section, exclude=exclude)):
            if task.position != index:
                await self._apply(session, task, {"position": index})

    async def move_to_section(self, task_id: str, section: str) -> Task:
        section = Section(section).value
        async with self.store.transaction() as session:
            task = await self._get(session, task_id)
            origin = (task.bucket_id, task.section)
            position = len(await self._container(session, task.bucket_id, section, exclude={task.id}))
            await self._apply(session, task, {"section": section, "position": position})
            await self._close_gaps(session, *origin, exclude={task.id})
            return task

    async def move_to_bucket(self, task_id: str, bucket_id: str) -> Task:
        async with self.store.transaction() as session:
            await self._require_bucket(session, bucket_id)
            task = await self._get(session, task_id)
            origin = (task.bucket_id, task.section)
            position = len(await self._container(session, bucket_id, task.section, exclude={task.id}))
            await self._apply(session, task, {"bucket_id": bucket_id, "position": position})
            await self._close_gaps(session, *origin, exclude={task.id})
            return task

    async def reorder(self, task_id: str, new_position: int, bucket_id: Optional[str] = None,
                      section: Optional[str] = None) -> List[Task]:
        """Move one task to ``new_position`` in its (possibly new) container."""
        task_ids = [task_id]
        async with self.store.transaction() as session:
            task = await self._get(session, task_id)
            target_bucket = bucket_id if bucket_id is not None else task.bucket_id
            target_section = Section(section).value if section is not None else task.section
        return await self.move_batch(task_ids, target_bucket, target_section, new_position)

    async def move_batch(self, task_ids: List[str], bucket_id: str, section: str,
                         insert_position: int = 0) -> List[Task]:
        section = Section(section).value
        async with self.store.transaction() as session:
            await self._require_bucket(session, bucket_id)
            moving = [await self._get(session, task_id) for task_id in task_ids]
            origins = {(task.bucket_id, task.section) for task in moving} - {(bucket_id, section)}
            existing = await self._container(session, bucket_id, section, exclude=set(task_ids))
            insert_position = max(0, min(insert_position, len(existing)))
            ordered = existing[:insert_position] + moving + existing[insert_position:]
            moved_ids = set(task_ids)
            for index, task in enumerate(ordered):
                changes: Dict[str, Any] = {}
                if task.position != index:
                    changes["position"] = index
                if task.id in moved_ids:
                    if task.bucket_id != bucket_id:
                        changes["bucket_id"] = bucket_id
                    if task.section != section:
                        changes["section"] = section
                if changes:
                    await self._apply(session, task, changes)
            for origin_bucket, origin_section in origins:
                await self._close_gaps(session, origin_bucket, origin_section, exclude=moved_ids)
            return ordered

    async def purge(self, task_id: str) -> bool:
        """Hard delete on this device only; the remote copy is untouched."""
        async with self.store.transaction() as session:
            task = await session.get(Task, task_id)
            if task is None or task.owner_id != self.identity.owner_id:
                return False
            await session.delete(task)
            return True

    async def complete(self, task_id: str) -> WritebackResult:
        return await self._set_completion(task_id, True)

    async def uncomplete(self, task_id: str) -> WritebackResult:
        return await self._set_completion(task_id, False)

    async def _set_completion(self, task_id: str, completed: bool) -> WritebackResult:
        async with self.store.transaction() as session:
            task = await self._get(session, task_id)
            previous = {"status": task.status, "completed_at": task.completed_at}
            if completed:
                changes = {"status": TaskStatus.completed.value, "completed_at": self._now()}
            else:
                changes = {"status": TaskStatus.active.value, "completed_at": None}
            await self._apply(session, task, changes)
            connection = await self._resolve_connection(session, task)

        error = await self._writeback(task, connection, completed)
        if error is None:
            return WritebackResult(ok=True, task=task)

        logger.warning(f"Writeback for task {task.id} failed, rolling back: {error}")
        async with self.store.transaction() as session:
            task = await self._get(session, task_id)
            await self._apply(session, task, dict(previous))
        return WritebackResult(ok=False, task=task, error=error)

    async def _resolve_connection(self, session: AsyncSession, task: Task) -> Optional[IntegrationConnection]:
        if task.source == TaskSource.manual.value or not task.source_id:
            return None
        if task.connection_id:
            return await session.get(IntegrationConnection, task.connection_id)
        return (
            await session.execute(
                select(IntegrationConnection)
                .where(IntegrationConnection.type == task.source, IntegrationConnection.is_active.is_(True))
                .order_by(IntegrationConnection.created_at)
            )
        ).scalars().first()

    async def _writeback(self, task: Task, connection: Optional[IntegrationConnection],
                         completed: bool) -> Optional[str]:
        if connection is None:
            return None
        client = self.providers.get(task.source)
        if client is None:
            return None
        try:
            await client.push_completion(connection, task.source_id, completed)
        except (ProviderError, httpx.HTTPError) as exc:
            return str(exc) or exc.__class__.__name__
        return None
