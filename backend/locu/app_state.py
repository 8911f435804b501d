import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from locu.clock import to_iso, utc_now
from locu.models import AppState

APP_STATE_KEY = "state"


async def get_or_create_app_state(session: AsyncSession, now: Optional[str] = None) -> AppState:
    """The device's singleton state row; the first call mints a stable device id."""
    state = (await session.execute(select(AppState).where(AppState.key == APP_STATE_KEY))).scalar_one_or_none()
    if state is None:
        state = AppState(
            key=APP_STATE_KEY,
            device_id=str(uuid.uuid4()),
            elapsed_seconds=0,
            updated_at=now or to_iso(utc_now()),
        )
        session.add(state)
        await session.flush()
    return state


def clear_timer_snapshot(state: AppState, now: str) -> None:
    state.active_session_id = None
    state.active_time_entry_id = None
    state.active_task_id = None
    state.timer_started_at = None
    state.timer_mode = None
    state.fixed_minutes = None
    state.elapsed_seconds = 0
    state.updated_at = now


async def stored_account_id(session: AsyncSession) -> Optional[str]:
    state = (await session.execute(select(AppState).where(AppState.key == APP_STATE_KEY))).scalar_one_or_none()
    return state.account_id if state is not None else None
