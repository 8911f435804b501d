import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import select

from locu.errors import EntityNotFound
from locu.identity import IdentityResolver
from locu.models import Task, TimeEntry
from locu.store import LocalStore


@dataclass
class EstimateSuggestion:
    suggested_minutes: Optional[int]
    sample_count: int
    source: Optional[str]  # "task" | "bucket" | None


def median(values: Sequence[float]) -> float:
    ordered = sorted(values)
    if not ordered:
        raise ValueError("median of empty sequence")
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def to_suggested_minutes(seconds: float) -> int:
    # Half-up to the nearest 5 minutes, never below 5.
    rounded = math.floor(seconds / 60 / 5 + 0.5) * 5
    return max(5, int(rounded))


class EstimateService:
    def __init__(self, store: LocalStore, identity: IdentityResolver, sample_window: int = 8, min_samples: int = 2):
        self.store = store
        self.identity = identity
        self.sample_window = sample_window
        self.min_samples = min_samples

    async def _recent_durations(self, session, task_ids: List[str]) -> List[int]:
        if not task_ids:
            return []
        rows = await session.execute(
            select(TimeEntry.duration_seconds)
            .where(
                TimeEntry.task_id.in_(task_ids),
                TimeEntry.ended_at.is_not(None),
                TimeEntry.duration_seconds > 0,
            )
            .order_by(TimeEntry.started_at.desc())
            .limit(self.sample_window)
        )
        return [row[0] for row in rows]

    async def suggest(self, task_id: str) -> EstimateSuggestion:
        """Median of recent closed durations for the task, else for its bucket."""
        async with self.store.transaction() as session:
            task = await session.get(Task, task_id)
            if task is None or task.owner_id != self.identity.owner_id:
                raise EntityNotFound("task", task_id)

            durations = await self._recent_durations(session, [task.id])
            if len(durations) >= self.min_samples:
                return EstimateSuggestion(to_suggested_minutes(median(durations)), len(durations), "task")

            if not task.bucket_id:
                return EstimateSuggestion(suggested_minutes=None, sample_count=0, source=None)

            bucket_task_ids = (
                await session.execute(select(Task.id).where(
                    Task.owner_id == self.identity.owner_id,
                    Task.bucket_id == task.bucket_id,
                ))
            ).scalars().all()
            durations = await self._recent_durations(session, list(bucket_task_ids))
            if len(durations) >= self.min_samples:
                return EstimateSuggestion(to_suggested_minutes(median(durations)), len(durations), "bucket")
            return EstimateSuggestion(suggested_minutes=None, sample_count=0, source=None)
