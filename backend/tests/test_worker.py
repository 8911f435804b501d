import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from locu.errors import ProviderError, SchemaUnavailable
from locu.providers import ProviderRegistry
from worker import main as worker_main

from fakes import FakeProvider, FakeRemoteStore, linear_item


def test_worker_loop_drains_and_syncs_connections(open_runtime):
    remote = FakeRemoteStore()
    provider = FakeProvider(items=[linear_item("ENG-1"), linear_item("ENG-2", team_id="team-ops")])

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote,
                                providers=ProviderRegistry({"linear": provider})) as rt:
            inbox = await rt.buckets.get_default()
            await rt.connections.add("linear", "lin_api_key")
            await rt.import_rules.add("linear", "team-eng", inbox.id)
            with patch("worker.main.asyncio.sleep", new_callable=AsyncMock):
                await worker_main.worker_loop(rt, iterations=2)
            return await rt.tasks.list(), await rt.outbox.pending_count()

    tasks, pending = asyncio.run(_run())
    assert [t.source_id for t in tasks] == ["ENG-1"]
    # The second pass pushed what the first pass imported.
    assert pending == 0
    assert ("upsert", "tasks", tasks[0].id) in remote.calls


def test_sync_integrations_once_reports_failures_per_connection(open_runtime, clock):
    failing = FakeProvider(fail_with=ProviderError("invalid_key", "Todoist rejected the token", 401))
    working = FakeProvider(items=[linear_item("ENG-3")])

    async def _run():
        registry = ProviderRegistry({"todoist": failing, "linear": working})
        async with open_runtime(providers=registry) as rt:
            inbox = await rt.buckets.get_default()
            await rt.connections.add("todoist", "bad-token")
            clock.advance(1)
            await rt.connections.add("linear", "lin_api_key")
            await rt.import_rules.add("linear", "team-eng", inbox.id)
            imported = await worker_main.sync_integrations_once(rt)
            results = await rt.connections.sync_all()
            return imported, results

    imported, results = asyncio.run(_run())
    assert imported == 1
    assert results[0].error == "invalid_key: Todoist rejected the token"
    assert results[1].error is None
    assert results[1].import_result.skipped == 1


def test_worker_loop_stops_when_store_is_unusable(open_runtime):
    async def _run():
        async with open_runtime(account_id="acct-1", remote=FakeRemoteStore()) as rt:
            with patch("worker.main.drain_once", new_callable=AsyncMock, side_effect=SchemaUnavailable("gone")):
                with patch("worker.main.asyncio.sleep", new_callable=AsyncMock):
                    with pytest.raises(SchemaUnavailable):
                        await worker_main.worker_loop(rt, iterations=3)

    asyncio.run(_run())


def test_worker_loop_survives_unexpected_errors(open_runtime):
    async def _run():
        async with open_runtime(account_id="acct-1", remote=FakeRemoteStore()) as rt:
            drain = AsyncMock(side_effect=[RuntimeError("flaky"), None])
            with patch("worker.main.drain_once", drain):
                with patch("worker.main.asyncio.sleep", new_callable=AsyncMock) as sleep:
                    await worker_main.worker_loop(rt, iterations=2)
            return drain.await_count, [c.args[0] for c in sleep.await_args_list]

    calls, sleeps = asyncio.run(_run())
    assert calls == 2
    assert sleeps[0] == worker_main.LOOP_ERROR_PAUSE_SECONDS
