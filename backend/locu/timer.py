import asyncio
import logging
import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from locu.app_state import clear_timer_snapshot, get_or_create_app_state
from locu.clock import Clock, local_day_bounds, parse_iso, to_iso, utc_now
from locu.errors import ReconcileAmbiguous
from locu.identity import IdentityResolver
from locu.models import AppState, Session, TimeEntry, TimerMode
from locu.outbox import Outbox
from locu.store import LocalStore

logger = logging.getLogger(__name__)


def whole_seconds(start: datetime, end: datetime) -> int:
    """Elapsed seconds rounded half-up, never negative."""
    return max(0, int(math.floor((end - start).total_seconds() + 0.5)))


@dataclass
class TimerState:
    is_running: bool = False
    session_id: Optional[str] = None
    time_entry_id: Optional[str] = None
    task_id: Optional[str] = None
    started_at: Optional[str] = None
    mode: str = TimerMode.open.value
    fixed_minutes: Optional[int] = None
    elapsed_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconcileOutcome(str, Enum):
    already_running = "already_running"
    resumed = "resumed"
    stale_closed = "stale_closed"
    nothing = "nothing"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    session_id: Optional[str] = None
    elapsed_seconds: int = 0
    candidates: int = 0
    ambiguous: bool = False
    repaired_entries: int = 0
    closed_sessions: List[str] = field(default_factory=list)


class TimerEngine:
    """Single focus timer for this device.

    Idle -> Running -> Idle. Every transition runs under one lock and
    writes its rows and outbox records in a single transaction. The tick
    task is the only writer of ``elapsed_seconds`` while running.
    """

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        identity: IdentityResolver,
        clock: Clock = utc_now,
        tick_seconds: float = 1.0,
        checkpoint_every: int = 5,
        default_fixed_minutes: int = 25,
        stale_after_hours: int = 24,
        timezone_name: str = "UTC",
        run_ticker: bool = True,
    ):
        self.store = store
        self.outbox = outbox
        self.identity = identity
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.checkpoint_every = max(1, checkpoint_every)
        self.default_fixed_minutes = default_fixed_minutes
        self.stale_after = timedelta(hours=stale_after_hours)
        self.timezone_name = timezone_name
        self.run_ticker = run_ticker
        self._state = TimerState()
        self._lock = asyncio.Lock()
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> TimerState:
        return TimerState(**asdict(self._state))

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    # --- ticker ---

    def _start_ticker(self) -> None:
        self._cancel_ticker()
        if self.run_ticker:
            self._tick_task = asyncio.create_task(self._run_ticker())

    def _cancel_ticker(self) -> None:
        task, self._tick_task = self._tick_task, None
        # An auto-stop runs inside the tick task itself; that loop exits on its own.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run_ticker(self) -> None:
        me = asyncio.current_task()
        while self._tick_task is me:
            await asyncio.sleep(self.tick_seconds)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Timer tick failed")

    async def tick(self) -> None:
        async with self._lock:
            if not self._state.is_running:
                return
            self._state.elapsed_seconds += 1
            elapsed = self._state.elapsed_seconds
            if self._state.mode == TimerMode.fixed.value and self._state.fixed_minutes:
                if elapsed >= self._state.fixed_minutes * 60:
                    logger.info("Fixed timer reached %s min, stopping session %s",
                                self._state.fixed_minutes, self._state.session_id)
                    await self._stop_locked()
                    return
            if elapsed % self.checkpoint_every == 0:
                await self._checkpoint()

    # --- snapshot ---

    def _write_snapshot(self, app_state: AppState, now: str) -> None:
        app_state.active_session_id = self._state.session_id
        app_state.active_time_entry_id = self._state.time_entry_id
        app_state.active_task_id = self._state.task_id
        app_state.timer_started_at = self._state.started_at
        app_state.timer_mode = self._state.mode
        app_state.fixed_minutes = self._state.fixed_minutes
        app_state.elapsed_seconds = self._state.elapsed_seconds
        app_state.updated_at = now

    async def _checkpoint(self) -> None:
        async with self.store.transaction() as session:
            app_state = await get_or_create_app_state(session)
            self._write_snapshot(app_state, to_iso(self.clock()))

    # --- transitions ---

    def _new_entry(self, session_id: str, task_id: str, started_at: str, device_id: str) -> TimeEntry:
        return TimeEntry(
            id=str(uuid.uuid4()),
            session_id=session_id,
            task_id=task_id,
            owner_id=self.identity.owner_id,
            started_at=started_at,
            ended_at=None,
            duration_seconds=None,
            device_id=device_id,
            created_at=started_at,
        )

    async def _close_entry(self, session: AsyncSession, entry: TimeEntry, ended_at: datetime) -> None:
        entry.ended_at = to_iso(ended_at)
        entry.duration_seconds = whole_seconds(parse_iso(entry.started_at), ended_at)
        await self.outbox.enqueue(session, "time_entries", "update", {
            "id": entry.id,
            "ended_at": entry.ended_at,
            "duration_seconds": entry.duration_seconds,
        })

    async def _close_session(self, session: AsyncSession, row: Session, ended_at: datetime) -> None:
        row.ended_at = to_iso(ended_at)
        row.is_active = False
        await self.outbox.enqueue(session, "sessions", "update", {
            "id": row.id,
            "ended_at": row.ended_at,
            "is_active": False,
        })

    async def start(self, task_id: str, mode: str = TimerMode.open.value,
                    fixed_minutes: Optional[int] = None) -> TimerState:
        mode = TimerMode(mode).value
        if mode == TimerMode.fixed.value:
            fixed_minutes = fixed_minutes or self.default_fixed_minutes
            if fixed_minutes <= 0:
                raise ValueError("fixed_minutes must be positive")
        else:
            fixed_minutes = None

        async with self._lock:
            if self._state.is_running:
                await self._stop_locked()

            now = self.clock()
            now_iso = to_iso(now)
            async with self.store.transaction() as session:
                app_state = await get_or_create_app_state(session, now_iso)
                row = Session(
                    id=str(uuid.uuid4()),
                    owner_id=self.identity.owner_id,
                    task_id=task_id,
                    started_at=now_iso,
                    ended_at=None,
                    is_active=True,
                    device_id=app_state.device_id,
                    created_at=now_iso,
                )
                session.add(row)
                await session.flush()
                entry = self._new_entry(row.id, task_id, now_iso, app_state.device_id)
                session.add(entry)
                await session.flush()
                await self.outbox.enqueue(session, "sessions", "insert", row.to_dict())
                await self.outbox.enqueue(session, "time_entries", "insert", entry.to_dict())

                self._state = TimerState(
                    is_running=True,
                    session_id=row.id,
                    time_entry_id=entry.id,
                    task_id=task_id,
                    started_at=now_iso,
                    mode=mode,
                    fixed_minutes=fixed_minutes,
                    elapsed_seconds=0,
                )
                self._write_snapshot(app_state, now_iso)

            self._start_ticker()
            logger.info(f"Timer started: session {row.id} task {task_id} mode {mode}")
            return self.state

    async def switch_task(self, task_id: str) -> Optional[TimerState]:
        async with self._lock:
            if not self._state.is_running:
                return None
            now = self.clock()
            now_iso = to_iso(now)
            async with self.store.transaction() as session:
                app_state = await get_or_create_app_state(session, now_iso)
                current = await session.get(TimeEntry, self._state.time_entry_id)
                if current is not None and current.ended_at is None:
                    await self._close_entry(session, current, now)
                entry = self._new_entry(self._state.session_id, task_id, now_iso, app_state.device_id)
                session.add(entry)
                await session.flush()
                await self.outbox.enqueue(session, "time_entries", "insert", entry.to_dict())

                self._state.time_entry_id = entry.id
                self._state.task_id = task_id
                self._write_snapshot(app_state, now_iso)
            logger.info("Timer switched to task %s in session %s", task_id, self._state.session_id)
            return self.state

    async def stop(self) -> Optional[str]:
        async with self._lock:
            if not self._state.is_running:
                return None
            return await self._stop_locked()

    async def _stop_locked(self) -> Optional[str]:
        self._cancel_ticker()
        session_id = self._state.session_id
        now = self.clock()
        now_iso = to_iso(now)
        async with self.store.transaction() as session:
            entry = await session.get(TimeEntry, self._state.time_entry_id) if self._state.time_entry_id else None
            if entry is not None and entry.ended_at is None:
                await self._close_entry(session, entry, now)
            row = await session.get(Session, session_id) if session_id else None
            if row is not None and row.ended_at is None:
                await self._close_session(session, row, now)
            app_state = await get_or_create_app_state(session, now_iso)
            clear_timer_snapshot(app_state, now_iso)
        self._state = TimerState()
        logger.info(f"Timer stopped: session {session_id}")
        return session_id

    async def shutdown(self) -> None:
        """Stop ticking without closing the session; reconcile picks it up next launch."""
        async with self._lock:
            self._cancel_ticker()
            if self._state.is_running:
                await self._checkpoint()

    # --- recovery ---

    async def _close_stale(self, session: AsyncSession, row: Session, app_state: AppState) -> None:
        checkpoint = parse_iso(app_state.updated_at) or parse_iso(row.started_at)
        started = parse_iso(row.started_at)
        if checkpoint < started:
            checkpoint = started
        open_entries = (
            await session.execute(
                select(TimeEntry).where(TimeEntry.session_id == row.id, TimeEntry.ended_at.is_(None))
            )
        ).scalars().all()
        for entry in open_entries:
            entry_end = max(checkpoint, parse_iso(entry.started_at))
            await self._close_entry(session, entry, entry_end)
        await self._close_session(session, row, checkpoint)
        logger.warning("Closed stale session %s at last checkpoint %s", row.id, to_iso(checkpoint))

    async def _today_active(self, session: AsyncSession, now: datetime) -> List[Session]:
        day_start, day_end = local_day_bounds(now, self.timezone_name)
        return list(
            (
                await session.execute(
                    select(Session)
                    .where(
                        Session.owner_id == self.identity.owner_id,
                        Session.is_active.is_(True),
                        Session.ended_at.is_(None),
                        Session.started_at >= day_start,
                        Session.started_at < day_end,
                    )
                    .order_by(Session.started_at.desc())
                )
            ).scalars().all()
        )

    async def reconcile(self) -> ReconcileResult:
        """Resume a session left running by a crash or by another device."""
        async with self._lock:
            if self._state.is_running:
                return ReconcileResult(ReconcileOutcome.already_running, session_id=self._state.session_id,
                                       elapsed_seconds=self._state.elapsed_seconds)

            now = self.clock()
            now_iso = to_iso(now)
            result = ReconcileResult(ReconcileOutcome.nothing)
            async with self.store.transaction() as session:
                app_state = await get_or_create_app_state(session, now_iso)

                snapshot_row: Optional[Session] = None
                if app_state.active_session_id:
                    row = await session.get(Session, app_state.active_session_id)
                    if row is not None and row.is_active and row.ended_at is None \
                            and row.owner_id == self.identity.owner_id:
                        snapshot_row = row
                    if snapshot_row is not None and now - parse_iso(snapshot_row.started_at) > self.stale_after:
                        await self._close_stale(session, snapshot_row, app_state)
                        result.outcome = ReconcileOutcome.stale_closed
                        result.closed_sessions.append(snapshot_row.id)
                        snapshot_row = None

                candidates: List[Session] = [snapshot_row] if snapshot_row is not None else []
                for row in await self._today_active(session, now):
                    if all(row.id != c.id for c in candidates):
                        candidates.append(row)
                result.candidates = len(candidates)

                if len(candidates) > 1:
                    result.ambiguous = True
                    ambiguity = ReconcileAmbiguous(
                        f"{len(candidates)} sessions still running: {[c.id for c in candidates]}"
                    )
                    logger.warning(f"{ambiguity}; resuming {candidates[0].id}")

                chosen: Optional[Session] = None
                open_entries: List[TimeEntry] = []
                for row in candidates:
                    open_entries = list(
                        (
                            await session.execute(
                                select(TimeEntry)
                                .where(TimeEntry.session_id == row.id, TimeEntry.ended_at.is_(None))
                                .order_by(TimeEntry.started_at)
                            )
                        ).scalars().all()
                    )
                    if open_entries:
                        chosen = row
                        break
                    # Running session with no open entry cannot be resumed.
                    last_end = (
                        await session.execute(
                            select(TimeEntry.ended_at)
                            .where(TimeEntry.session_id == row.id)
                            .order_by(TimeEntry.ended_at.desc())
                        )
                    ).scalars().first()
                    await self._close_session(session, row, parse_iso(last_end) or parse_iso(row.started_at))
                    result.closed_sessions.append(row.id)

                if chosen is None:
                    if app_state.active_session_id:
                        clear_timer_snapshot(app_state, now_iso)
                    return result

                # Exactly one entry stays open: earlier ones end where the next begins.
                for older, newer in zip(open_entries, open_entries[1:]):
                    await self._close_entry(session, older, parse_iso(newer.started_at))
                    result.repaired_entries += 1
                entry = open_entries[-1]

                self._state = TimerState(
                    is_running=True,
                    session_id=chosen.id,
                    time_entry_id=entry.id,
                    task_id=entry.task_id,
                    started_at=chosen.started_at,
                    mode=TimerMode.open.value,
                    fixed_minutes=None,
                    elapsed_seconds=whole_seconds(parse_iso(chosen.started_at), now),
                )
                self._write_snapshot(app_state, now_iso)

            self._start_ticker()
            result.outcome = ReconcileOutcome.resumed
            result.session_id = self._state.session_id
            result.elapsed_seconds = self._state.elapsed_seconds
            logger.info(
                "Timer resumed session %s at %ss (candidates=%s, repaired=%s)",
                result.session_id, result.elapsed_seconds, result.candidates, result.repaired_entries,
            )
            return result

    # --- reads ---

    async def today(self) -> Dict[str, List[Dict[str, Any]]]:
        day_start, day_end = local_day_bounds(self.clock(), self.timezone_name)
        async with self.store.transaction() as session:
            sessions = (
                await session.execute(
                    select(Session)
                    .where(Session.owner_id == self.identity.owner_id,
                           Session.started_at >= day_start, Session.started_at < day_end)
                    .order_by(Session.started_at)
                )
            ).scalars().all()
            entries = (
                await session.execute(
                    select(TimeEntry)
                    .where(TimeEntry.owner_id == self.identity.owner_id,
                           TimeEntry.started_at >= day_start, TimeEntry.started_at < day_end)
                    .order_by(TimeEntry.started_at)
                )
            ).scalars().all()
            return {
                "sessions": [s.to_dict() for s in sessions],
                "time_entries": [e.to_dict() for e in entries],
            }

    async def tracked_seconds_today(self) -> Dict[str, int]:
        """Closed seconds per task today; the live entry is not included."""
        totals: Dict[str, int] = {}
        for entry in (await self.today())["time_entries"]:
            if not entry["duration_seconds"]:
                continue
            totals[entry["task_id"]] = totals.get(entry["task_id"], 0) + entry["duration_seconds"]
        return totals
