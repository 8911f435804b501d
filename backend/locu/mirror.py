import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from locu.app_state import get_or_create_app_state
from locu.clock import Clock, local_day_bounds, parse_iso, to_iso, utc_now
from locu.identity import LOCAL_OWNER_ID, IdentityResolver
from locu.models import Bucket, ImportRule, IntegrationConnection, Session, Task, TaskStatus, TimeEntry
from locu.outbox import DrainReport, Outbox
from locu.remote import RemoteStore
from locu.store import LocalStore
from locu.timer import ReconcileResult, TimerEngine, whole_seconds

logger = logging.getLogger(__name__)

# Parents before children so references resolve on both sides.
ADOPT_ORDER = (
    ("buckets", Bucket),
    ("tasks", Task),
    ("sessions", Session),
    ("time_entries", TimeEntry),
    ("import_rules", ImportRule),
)


def _column_values(model, data: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for attr in model.__mapper__.column_attrs:
        name = attr.columns[0].name
        if name in data:
            values[attr.key] = data[name]
    return values


@dataclass
class SyncNowResult:
    pulled: Dict[str, int] = field(default_factory=dict)
    drained: DrainReport = field(default_factory=DrainReport)
    reconcile: Optional[ReconcileResult] = None


class MirrorSync:
    """Pulls the remote mirror into the local store and adopts anonymous data on sign-in."""

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        identity: IdentityResolver,
        remote: Optional[RemoteStore] = None,
        timer: Optional[TimerEngine] = None,
        clock: Clock = utc_now,
        timezone_name: str = "UTC",
    ):
        self.store = store
        self.outbox = outbox
        self.identity = identity
        self.remote = remote
        self.timer = timer
        self.clock = clock
        self.timezone_name = timezone_name

    async def _default_bucket(self, session: AsyncSession, owner_id: str) -> Optional[Bucket]:
        return (
            await session.execute(
                select(Bucket)
                .where(Bucket.owner_id == owner_id, Bucket.is_default.is_(True))
                .order_by(Bucket.created_at)
            )
        ).scalars().first()

    async def _fold_default_into(self, session: AsyncSession, local_default: Bucket, target: Bucket) -> None:
        """Keep one default bucket: move everything from ``local_default`` into ``target``."""
        now = to_iso(self.clock())
        task_ids = (await session.execute(select(Task.id).where(Task.bucket_id == local_default.id))).scalars().all()
        await session.execute(
            update(Task).where(Task.bucket_id == local_default.id).values(bucket_id=target.id, updated_at=now)
        )
        for task_id in task_ids:
            await self.outbox.enqueue(session, "tasks", "update", {"id": task_id, "bucket_id": target.id, "updated_at": now})
        await session.execute(
            update(ImportRule)
            .where(ImportRule.target_bucket_id == local_default.id)
            .values(target_bucket_id=target.id, updated_at=now)
        )
        await session.delete(local_default)
        await session.flush()
        await self.outbox.enqueue(session, "buckets", "delete", {"id": local_default.id})
        logger.info(f"Merged default bucket {local_default.id} into {target.id}")

    # --- pull ---

    async def pull(self) -> Dict[str, int]:
        """Server wins, except for rows with local edits still waiting in the outbox."""
        counts = {"buckets": 0, "tasks": 0, "sessions": 0, "time_entries": 0, "skipped": 0}
        if self.identity.is_anonymous or self.remote is None:
            return counts

        owner_id = self.identity.owner_id
        day_start, _ = local_day_bounds(self.clock(), self.timezone_name)
        remote_buckets = await self.remote.fetch("buckets", owner_id)
        remote_tasks = [
            t for t in await self.remote.fetch("tasks", owner_id)
            if t.get("status", TaskStatus.active.value) == TaskStatus.active.value
        ]
        remote_sessions = await self.remote.fetch("sessions", owner_id, since=day_start)
        remote_entries = await self.remote.fetch("time_entries", owner_id, since=day_start)

        pending = {table: await self.outbox.pending_entity_ids(table) for table, _ in ADOPT_ORDER}

        async with self.store.transaction() as session:
            for data in remote_buckets:
                if not data.get("id") or data["id"] in pending["buckets"]:
                    counts["skipped"] += 1
                    continue
                if data.get("is_default"):
                    local_default = await self._default_bucket(session, owner_id)
                    if local_default is not None and local_default.id != data["id"]:
                        incoming = await session.merge(Bucket(**_column_values(Bucket, {**data, "owner_id": owner_id})))
                        await session.flush()
                        await self._fold_default_into(session, local_default, incoming)
                        counts["buckets"] += 1
                        continue
                await session.merge(Bucket(**_column_values(Bucket, {**data, "owner_id": owner_id})))
                counts["buckets"] += 1
            await session.flush()

            bucket_ids = set((await session.execute(select(Bucket.id).where(Bucket.owner_id == owner_id))).scalars().all())
            default = await self._default_bucket(session, owner_id)
            connection_ids = set((await session.execute(select(IntegrationConnection.id))).scalars().all())

            for data in remote_tasks:
                if not data.get("id") or data["id"] in pending["tasks"]:
                    counts["skipped"] += 1
                    continue
                values = _column_values(Task, {**data, "owner_id": owner_id})
                if values.get("bucket_id") not in bucket_ids:
                    values["bucket_id"] = default.id if default is not None else None
                if values.get("connection_id") not in connection_ids:
                    values["connection_id"] = None
                if values.get("source_id"):
                    clash = (
                        await session.execute(
                            select(Task).where(
                                Task.owner_id == owner_id,
                                Task.source_id == values["source_id"],
                                Task.id != values["id"],
                            )
                        )
                    ).scalars().first()
                    if clash is not None:
                        if clash.id in pending["tasks"]:
                            counts["skipped"] += 1
                            continue
                        await session.delete(clash)
                        await session.flush()
                await session.merge(Task(**values))
                counts["tasks"] += 1

            for data in remote_sessions:
                if not data.get("id") or data["id"] in pending["sessions"]:
                    counts["skipped"] += 1
                    continue
                await session.merge(Session(**_column_values(Session, {**data, "owner_id": owner_id})))
                counts["sessions"] += 1
            await session.flush()

            session_ids = set((await session.execute(select(Session.id))).scalars().all())
            for data in remote_entries:
                if not data.get("id") or data["id"] in pending["time_entries"] or data.get("session_id") not in session_ids:
                    counts["skipped"] += 1
                    continue
                values = _column_values(TimeEntry, {**data, "owner_id": owner_id})
                # Closed iff both halves are present.
                if values.get("ended_at") and values.get("duration_seconds") is None:
                    values["duration_seconds"] = whole_seconds(parse_iso(values["started_at"]), parse_iso(values["ended_at"]))
                if not values.get("ended_at"):
                    values["ended_at"] = None
                    values["duration_seconds"] = None
                await session.merge(TimeEntry(**values))
                counts["time_entries"] += 1

        logger.info("Pulled remote mirror: %s", counts)
        return counts

    async def sync_now(self) -> SyncNowResult:
        result = SyncNowResult()
        result.pulled = await self.pull()
        result.drained = await self.outbox.drain()
        if self.timer is not None:
            result.reconcile = await self.timer.reconcile()
        return result

    # --- sign-in ---

    async def adopt_local_data(self, account_id: str) -> Dict[str, int]:
        """Hand rows created while anonymous to ``account_id`` and queue them for upload."""
        previous = self.identity.account_id
        self.identity.sign_in(account_id)
        counts: Dict[str, int] = {}
        try:
            async with self.store.transaction() as session:
                state = await get_or_create_app_state(session)
                state.account_id = account_id
                account_default = await self._default_bucket(session, account_id)
                local_default = await self._default_bucket(session, LOCAL_OWNER_ID)
                if account_default is not None and local_default is not None:
                    await self._fold_default_into(session, local_default, account_default)

                adopted: Dict[str, List[str]] = {}
                for table, model in ADOPT_ORDER:
                    ids = (await session.execute(select(model.id).where(model.owner_id == LOCAL_OWNER_ID))).scalars().all()
                    adopted[table] = list(ids)
                    if ids:
                        await session.execute(
                            update(model).where(model.owner_id == LOCAL_OWNER_ID).values(owner_id=account_id)
                        )

                for table, model in ADOPT_ORDER:
                    counts[table] = len(adopted[table])
                    if not adopted[table]:
                        continue
                    rows = (await session.execute(select(model).where(model.id.in_(adopted[table])))).scalars().all()
                    for row in rows:
                        await self.outbox.enqueue(session, table, "insert", row.to_dict())
        except Exception:
            if previous:
                self.identity.sign_in(previous)
            else:
                self.identity.sign_out()
            raise
        logger.info(f"Adopted local data for account {account_id}: {counts}")
        return counts

    async def sign_out(self) -> None:
        """Forget the account on this device; later writes stay local."""
        async with self.store.transaction() as session:
            state = await get_or_create_app_state(session)
            state.account_id = None
        self.identity.sign_out()
