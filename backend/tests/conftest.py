"""Stable shared fixtures for tests.

Tests stay synchronous and drive coroutines with ``asyncio.run``; every
test gets its own SQLite file so nothing leaks between them.
"""
import os
from contextlib import asynccontextmanager

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_AUTH_BEARER_TOKENS"] = "test_token"
os.environ["APP_TIMEZONE"] = "UTC"
os.environ.pop("ACCOUNT_ID", None)
os.environ.pop("REMOTE_API_BASE", None)

from locu.config import Settings
from locu.providers import ProviderRegistry
from locu.runtime import Runtime

from fakes import FakeClock, FakeRemoteStore


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'locu.sqlite3'}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def build_runtime(db_url, clock):
    def _build(account_id=None, remote=None, providers=None, run_ticker=False, **overrides):
        cfg = Settings(DATABASE_URL=db_url, ACCOUNT_ID=account_id, **overrides)
        return Runtime(
            cfg,
            remote=remote,
            providers=providers or ProviderRegistry(),
            clock=clock,
            run_ticker=run_ticker,
        )

    return _build


@pytest.fixture
def open_runtime(build_runtime):
    @asynccontextmanager
    async def _open(**kwargs):
        runtime = build_runtime(**kwargs)
        await runtime.open()
        try:
            yield runtime
        finally:
            await runtime.close()

    return _open
