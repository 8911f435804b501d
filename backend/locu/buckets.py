import logging
import uuid
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from locu.clock import Clock, to_iso, utc_now
from locu.errors import EntityNotFound
from locu.identity import IdentityResolver
from locu.models import Bucket, ImportRule, Task
from locu.outbox import Outbox
from locu.store import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_BUCKET_NAME = "Inbox"


class BucketService:
    def __init__(self, store: LocalStore, outbox: Outbox, identity: IdentityResolver, clock: Clock = utc_now):
        self.store = store
        self.outbox = outbox
        self.identity = identity
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock())

    async def _ordered(self, session: AsyncSession) -> List[Bucket]:
        return list(
            (
                await session.execute(
                    select(Bucket)
                    .where(Bucket.owner_id == self.identity.owner_id)
                    .order_by(Bucket.position, Bucket.created_at)
                )
            ).scalars().all()
        )

    async def default_in(self, session: AsyncSession) -> Optional[Bucket]:
        return (
            await session.execute(
                select(Bucket).where(Bucket.owner_id == self.identity.owner_id, Bucket.is_default.is_(True))
            )
        ).scalars().first()

    async def ensure_default(self) -> Bucket:
        """Create the Inbox on first launch; idempotent."""
        async with self.store.transaction() as session:
            existing = await self.default_in(session)
            if existing is not None:
                return existing
            now = self._now()
            inbox = Bucket(
                id=str(uuid.uuid4()),
                owner_id=self.identity.owner_id,
                name=DEFAULT_BUCKET_NAME,
                position=0,
                is_default=True,
                created_at=now,
                updated_at=now,
            )
            for other in await self._ordered(session):
                other.position += 1
                other.updated_at = now
            session.add(inbox)
            await session.flush()
            await self.outbox.enqueue(session, "buckets", "insert", inbox.to_dict())
            logger.info("Created default bucket %s for %s", inbox.id, self.identity.owner_id)
            return inbox

    async def list(self) -> List[Bucket]:
        async with self.store.transaction() as session:
            return await self._ordered(session)

    async def get(self, bucket_id: str) -> Bucket:
        async with self.store.transaction() as session:
            bucket = await session.get(Bucket, bucket_id)
            if bucket is None or bucket.owner_id != self.identity.owner_id:
                raise EntityNotFound("bucket", bucket_id)
            return bucket

    async def get_default(self) -> Optional[Bucket]:
        async with self.store.transaction() as session:
            return await self.default_in(session)

    async def add(self, name: str, icon: Optional[str] = None, color: Optional[str] = None) -> Bucket:
        async with self.store.transaction() as session:
            max_position = (
                await session.execute(
                    select(func.max(Bucket.position)).where(Bucket.owner_id == self.identity.owner_id)
                )
            ).scalar()
            now = self._now()
            bucket = Bucket(
                id=str(uuid.uuid4()),
                owner_id=self.identity.owner_id,
                name=name,
                icon=icon,
                color=color,
                position=0 if max_position is None else max_position + 1,
                is_default=False,
                created_at=now,
                updated_at=now,
            )
            session.add(bucket)
            await session.flush()
            await self.outbox.enqueue(session, "buckets", "insert", bucket.to_dict())
            return bucket

    async def update(self, bucket_id: str, name: Optional[str] = None, icon: Optional[str] = None,
                     color: Optional[str] = None) -> Bucket:
        async with self.store.transaction() as session:
            bucket = await session.get(Bucket, bucket_id)
            if bucket is None or bucket.owner_id != self.identity.owner_id:
                raise EntityNotFound("bucket", bucket_id)
            changes = {}
            if name is not None:
                changes["name"] = name
            if icon is not None:
                changes["icon"] = icon
            if color is not None:
                changes["color"] = color
            if not changes:
                return bucket
            changes["updated_at"] = self._now()
            for key, value in changes.items():
                setattr(bucket, key, value)
            await self.outbox.enqueue(session, "buckets", "update", {"id": bucket.id, **changes})
            return bucket

    async def delete(self, bucket_id: str) -> bool:
        """Delete a bucket, moving its tasks to the default bucket first.

        The default bucket and unknown ids are left alone (returns False).
        """
        async with self.store.transaction() as session:
            bucket = await session.get(Bucket, bucket_id)
            if bucket is None or bucket.owner_id != self.identity.owner_id or bucket.is_default:
                return False
            default = await self.default_in(session)
            now = self._now()
            moved: List[str] = []

            if default is not None:
                moved = (
                    await session.execute(select(Task.id).where(Task.bucket_id == bucket_id))
                ).scalars().all()
                await session.execute(
                    update(Task).where(Task.bucket_id == bucket_id).values(bucket_id=default.id, updated_at=now)
                )
                for task_id in moved:
                    await self.outbox.enqueue(
                        session, "tasks", "update", {"id": task_id, "bucket_id": default.id, "updated_at": now}
                    )

            rule_ids = (
                await session.execute(select(ImportRule.id).where(ImportRule.target_bucket_id == bucket_id))
            ).scalars().all()
            await session.execute(
                update(ImportRule)
                .where(ImportRule.target_bucket_id == bucket_id)
                .values(target_bucket_id=None, updated_at=now)
            )
            for rule_id in rule_ids:
                await self.outbox.enqueue(
                    session, "import_rules", "update", {"id": rule_id, "target_bucket_id": None, "updated_at": now}
                )

            await session.delete(bucket)
            await session.flush()
            await self.outbox.enqueue(session, "buckets", "delete", {"id": bucket_id})
            await self._renumber(session, await self._ordered(session), now)
            logger.info(f"Deleted bucket {bucket_id}, moved {len(moved)} tasks")
            return True

    async def reorder(self, bucket_id: str, new_position: int) -> List[Bucket]:
        async with self.store.transaction() as session:
            ordered = await self._ordered(session)
            moving = next((b for b in ordered if b.id == bucket_id), None)
            if moving is None:
                raise EntityNotFound("bucket", bucket_id)
            ordered.remove(moving)
            new_position = max(0, min(new_position, len(ordered)))
            ordered.insert(new_position, moving)
            await self._renumber(session, ordered, self._now())
            return ordered

    async def _renumber(self, session: AsyncSession, ordered: List[Bucket], now: str) -> None:
        for index, bucket in enumerate(ordered):
            if bucket.position == index:
                continue
            bucket.position = index
            bucket.updated_at = now
            await self.outbox.enqueue(
                session, "buckets", "update", {"id": bucket.id, "position": index, "updated_at": now}
            )
