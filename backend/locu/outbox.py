import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from locu.clock import Clock, to_iso, utc_now
from locu.errors import SyncPermanent, SyncTransient
from locu.identity import IdentityResolver
from locu.models import OutboxItem, OutboxOperation, OutboxStatus
from locu.remote import RemoteStore
from locu.store import LocalStore

logger = logging.getLogger(__name__)

SYNCED_TABLES = ("buckets", "tasks", "sessions", "time_entries", "import_rules")

# Payload columns that point at another mirrored row; a child waits for its parent.
PARENT_REFERENCES = {
    "tasks": (("bucket_id", "buckets"),),
    "sessions": (("task_id", "tasks"),),
    "time_entries": (("session_id", "sessions"), ("task_id", "tasks")),
    "import_rules": (("target_bucket_id", "buckets"),),
}


@dataclass
class DrainReport:
    sent: int = 0
    retried: int = 0
    dead: int = 0
    deferred: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


def backoff_seconds(attempts: int, max_backoff: int) -> int:
    return min(2 ** attempts, max_backoff)


class Outbox:
    """Per-device queue of local mutations waiting for the remote store.

    Records are written in the caller's transaction, so an entity change and
    its outbox record commit together. ``drain()`` pushes them in creation
    order and deletes each one only after the remote acknowledged it.
    """

    def __init__(
        self,
        store: LocalStore,
        identity: IdentityResolver,
        remote: Optional[RemoteStore] = None,
        clock: Clock = utc_now,
        max_backoff_seconds: int = 60,
        batch_size: int = 200,
    ):
        self.store = store
        self.identity = identity
        self.remote = remote
        self.clock = clock
        self.max_backoff_seconds = max_backoff_seconds
        self.batch_size = batch_size
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        session: AsyncSession,
        table: str,
        operation: str,
        payload: Dict[str, Any],
    ) -> Optional[OutboxItem]:
        if table not in SYNCED_TABLES:
            raise ValueError(f"table {table!r} is not mirrored")
        try:
            op = OutboxOperation(operation)
        except ValueError:
            raise ValueError(f"unknown outbox operation {operation!r}") from None
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValueError("outbox payload must carry an id")
        if self.identity.is_anonymous:
            return None

        max_seq = (await session.execute(select(func.max(OutboxItem.seq)))).scalar()
        item = OutboxItem(
            id=str(uuid.uuid4()),
            seq=(max_seq or 0) + 1,
            table_name=table,
            operation=op.value,
            entity_id=str(payload["id"]),
            payload=payload,
            created_at=to_iso(self.clock()),
            attempts=0,
            status=OutboxStatus.pending.value,
        )
        session.add(item)
        return item

    async def drain(self) -> DrainReport:
        report = DrainReport()
        if self.identity.is_anonymous or self.remote is None:
            return report

        async with self._lock:
            now = to_iso(self.clock())
            due = or_(OutboxItem.next_attempt_at.is_(None), OutboxItem.next_attempt_at <= now)
            backing_off = OutboxItem.next_attempt_at > now
            async with self.store.transaction() as session:
                items = (
                    await session.execute(
                        select(OutboxItem)
                        .where(OutboxItem.status == OutboxStatus.pending.value, due)
                        .order_by(OutboxItem.seq)
                        .limit(self.batch_size)
                    )
                ).scalars().all()
                waiting = (
                    await session.execute(
                        select(
                            OutboxItem.table_name, OutboxItem.entity_id, func.min(OutboxItem.seq), func.count(),
                        )
                        .where(OutboxItem.status == OutboxStatus.pending.value, backing_off)
                        .group_by(OutboxItem.table_name, OutboxItem.entity_id)
                    )
                ).all()

            # (table, entity id) -> lowest seq that could not be sent; later records of
            # that entity, and of rows referencing it, wait behind it.
            held: Dict[tuple[str, str], int] = {}
            for table, entity_id, seq, count in waiting:
                held[(table, entity_id)] = seq
                report.deferred += count
            for item in items:
                key = (item.table_name, item.entity_id)
                if self._is_held(item, held):
                    held.setdefault(key, item.seq)
                    report.deferred += 1
                    continue

                try:
                    await self._push(item)
                except SyncPermanent as exc:
                    held.setdefault(key, item.seq)
                    await self._mark_dead(item, str(exc))
                    report.dead += 1
                    report.errors.append({
                        "outbox_id": item.id,
                        "table": item.table_name,
                        "entity_id": item.entity_id,
                        "operation": item.operation,
                        "error": str(exc),
                    })
                except SyncTransient as exc:
                    held.setdefault(key, item.seq)
                    await self._mark_retry(item, str(exc))
                    report.retried += 1
                except Exception as exc:
                    held.setdefault(key, item.seq)
                    logger.exception(f"Unexpected error pushing outbox {item.id}")
                    await self._mark_retry(item, f"unexpected: {exc}")
                    report.retried += 1
                else:
                    await self._acknowledge(item)
                    report.sent += 1

        if report.sent or report.retried or report.dead:
            logger.info(
                "Outbox drain: sent=%s retried=%s dead=%s deferred=%s",
                report.sent, report.retried, report.dead, report.deferred,
            )
        return report

    @staticmethod
    def _is_held(item: OutboxItem, held: Dict[tuple[str, str], int]) -> bool:
        keys = [(item.table_name, item.entity_id)]
        payload = item.payload or {}
        for column, parent_table in PARENT_REFERENCES.get(item.table_name, ()):
            if payload.get(column):
                keys.append((parent_table, str(payload[column])))
        return any(held.get(key, item.seq) < item.seq for key in keys)

    async def _push(self, item: OutboxItem) -> None:
        payload = dict(item.payload or {})
        if item.operation == OutboxOperation.insert.value:
            await self.remote.upsert(item.table_name, payload)
        elif item.operation == OutboxOperation.update.value:
            payload.pop("id", None)
            await self.remote.update(item.table_name, item.entity_id, payload)
        elif item.operation == OutboxOperation.delete.value:
            await self.remote.delete(item.table_name, item.entity_id)
        else:
            raise SyncPermanent(f"unknown operation {item.operation}")

    async def _acknowledge(self, item: OutboxItem) -> None:
        async with self.store.transaction() as session:
            await session.execute(delete(OutboxItem).where(OutboxItem.id == item.id))

    async def _mark_retry(self, item: OutboxItem, error: str) -> None:
        attempts = (item.attempts or 0) + 1
        delay = backoff_seconds(attempts, self.max_backoff_seconds)
        next_at = to_iso(self.clock() + timedelta(seconds=delay))
        async with self.store.transaction() as session:
            await session.execute(
                update(OutboxItem)
                .where(OutboxItem.id == item.id)
                .values(attempts=attempts, next_attempt_at=next_at, last_error=error)
            )
        logger.warning(f"Outbox {item.table_name}/{item.entity_id} failed (attempt {attempts}), retrying in {delay}s: {error}")

    async def _mark_dead(self, item: OutboxItem, error: str) -> None:
        async with self.store.transaction() as session:
            await session.execute(
                update(OutboxItem)
                .where(OutboxItem.id == item.id)
                .values(
                    status=OutboxStatus.dead.value,
                    attempts=(item.attempts or 0) + 1,
                    last_error=error,
                )
            )
        logger.error(f"Outbox {item.operation} {item.table_name}/{item.entity_id} rejected, moved to dead letters: {error}")

    async def pending_count(self) -> int:
        async with self.store.transaction() as session:
            return (
                await session.execute(
                    select(func.count()).select_from(OutboxItem).where(OutboxItem.status == OutboxStatus.pending.value)
                )
            ).scalar() or 0

    async def pending_entity_ids(self, table: str) -> set[str]:
        async with self.store.transaction() as session:
            rows = await session.execute(
                select(OutboxItem.entity_id).where(OutboxItem.table_name == table)
            )
            return {row[0] for row in rows}

    async def dead_letters(self) -> List[Dict[str, Any]]:
        async with self.store.transaction() as session:
            items = (
                await session.execute(
                    select(OutboxItem).where(OutboxItem.status == OutboxStatus.dead.value).order_by(OutboxItem.seq)
                )
            ).scalars().all()
            return [item.to_dict() for item in items]

    async def clear_dead_letters(self) -> int:
        async with self.store.transaction() as session:
            result = await session.execute(delete(OutboxItem).where(OutboxItem.status == OutboxStatus.dead.value))
            return result.rowcount or 0

    async def retry_dead_letters(self) -> int:
        async with self.store.transaction() as session:
            result = await session.execute(
                update(OutboxItem)
                .where(OutboxItem.status == OutboxStatus.dead.value)
                .values(status=OutboxStatus.pending.value, attempts=0, next_attempt_at=None)
            )
            return result.rowcount or 0
