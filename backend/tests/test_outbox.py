import asyncio
import uuid

import pytest
from sqlalchemy import select

from locu.errors import SyncPermanent, SyncTransient
from locu.models import Bucket, OutboxItem
from locu.outbox import backoff_seconds

from fakes import FakeRemoteStore


async def _outbox_rows(runtime):
    async with runtime.store.transaction() as session:
        return (await session.execute(select(OutboxItem).order_by(OutboxItem.seq))).scalars().all()


def test_backoff_is_exponential_and_capped():
    assert [backoff_seconds(n, 60) for n in (1, 2, 3, 5, 6, 12)] == [2, 4, 8, 32, 60, 60]


def test_entity_write_and_outbox_record_commit_together(open_runtime):
    async def _run():
        async with open_runtime(account_id="acct-1", remote=FakeRemoteStore()) as rt:
            before = await rt.outbox.pending_count()
            bucket_id = str(uuid.uuid4())
            with pytest.raises(RuntimeError):
                async with rt.store.transaction() as session:
                    session.add(Bucket(id=bucket_id, owner_id="acct-1", name="Work", position=1,
                                       is_default=False, created_at="x", updated_at="x"))
                    await session.flush()
                    await rt.outbox.enqueue(session, "buckets", "insert", {"id": bucket_id})
                    raise RuntimeError("crash mid-write")
            async with rt.store.transaction() as session:
                assert await session.get(Bucket, bucket_id) is None
            assert await rt.outbox.pending_count() == before

            await rt.buckets.add("Work")
            assert await rt.outbox.pending_count() == before + 1

    asyncio.run(_run())


def test_enqueue_rejects_malformed_records(open_runtime):
    async def _run():
        async with open_runtime(account_id="acct-1") as rt:
            async with rt.store.transaction() as session:
                with pytest.raises(ValueError):
                    await rt.outbox.enqueue(session, "connections", "insert", {"id": "c-1"})
                with pytest.raises(ValueError):
                    await rt.outbox.enqueue(session, "tasks", "merge", {"id": "t-1"})
                with pytest.raises(ValueError):
                    await rt.outbox.enqueue(session, "tasks", "insert", {"title": "no id"})

    asyncio.run(_run())


def test_anonymous_writes_stay_local(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(remote=remote) as rt:
            await rt.buckets.add("Work")
            report = await rt.outbox.drain()
            return await rt.outbox.pending_count(), report

    pending, report = asyncio.run(_run())
    assert pending == 0
    assert report.sent == 0
    assert remote.calls == []


def test_drain_pushes_in_creation_order_and_is_idempotent(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            inbox = await rt.buckets.get_default()
            work = await rt.buckets.add("Work")
            await rt.buckets.update(work.id, name="Deep work")
            first = await rt.outbox.drain()
            second = await rt.outbox.drain()
            return inbox.id, work.id, first, second, await rt.outbox.pending_count()

    inbox_id, work_id, first, second, pending = asyncio.run(_run())
    assert first.sent == 3
    assert second.sent == 0
    assert pending == 0
    assert remote.calls == [
        ("upsert", "buckets", inbox_id),
        ("upsert", "buckets", work_id),
        ("update", "buckets", work_id),
    ]
    assert remote.rows["buckets"][work_id]["name"] == "Deep work"


def test_transient_failure_backs_off_and_holds_later_records(open_runtime, clock):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            work = await rt.buckets.add("Work")
            await rt.buckets.update(work.id, color="blue")
            remote.fail(work.id, SyncTransient("503 upstream", status_code=503))

            first = await rt.outbox.drain()
            rows = await _outbox_rows(rt)
            work_rows = [r for r in rows if r.entity_id == work.id]

            # Still inside the backoff window.
            clock.advance(1)
            second = await rt.outbox.drain()

            clock.advance(2)
            third = await rt.outbox.drain()
            return work.id, first, second, third, work_rows, await rt.outbox.pending_count()

    work_id, first, second, third, work_rows, pending = asyncio.run(_run())
    assert (first.sent, first.retried, first.deferred) == (1, 1, 1)
    assert work_rows[0].attempts == 1
    assert work_rows[0].next_attempt_at == "2026-10-17T09:00:02.000+00:00"
    assert "503" in work_rows[0].last_error
    assert work_rows[1].attempts == 0
    assert (second.sent, second.deferred) == (0, 2)
    assert third.sent == 2
    assert pending == 0
    assert [c for c in remote.calls if c[2] == work_id] == [
        ("upsert", "buckets", work_id),
        ("upsert", "buckets", work_id),
        ("update", "buckets", work_id),
    ]


def test_permanent_failure_is_dead_lettered_not_retried(open_runtime, clock):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            work = await rt.buckets.add("Work")
            remote.fail(work.id, SyncPermanent("400 violates check constraint", status_code=400))

            report = await rt.outbox.drain()
            clock.advance(600)
            again = await rt.outbox.drain()
            dead = await rt.outbox.dead_letters()
            calls_before_retry = len(remote.calls)

            assert await rt.outbox.retry_dead_letters() == 1
            retried = await rt.outbox.drain()
            return work.id, report, again, dead, calls_before_retry, retried

    work_id, report, again, dead, calls_before_retry, retried = asyncio.run(_run())
    assert report.dead == 1
    assert report.errors[0]["entity_id"] == work_id
    assert report.errors[0]["table"] == "buckets"
    assert again.sent == 0 and again.dead == 0
    assert len(dead) == 1 and dead[0]["status"] == "dead"
    assert calls_before_retry == 2
    assert retried.sent == 1
    assert work_id in remote.rows["buckets"]


def test_clear_dead_letters(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            work = await rt.buckets.add("Work")
            remote.fail(work.id, SyncPermanent("403 forbidden", status_code=403))
            await rt.outbox.drain()
            cleared = await rt.outbox.clear_dead_letters()
            return cleared, await rt.outbox.dead_letters(), await rt.outbox.pending_count()

    cleared, dead, pending = asyncio.run(_run())
    assert cleared == 1
    assert dead == []
    assert pending == 0


def test_unexpected_error_is_retried(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            inbox = await rt.buckets.get_default()
            remote.fail(inbox.id, KeyError("boom"))
            report = await rt.outbox.drain()
            return report, await rt.outbox.pending_count(), await rt.outbox.dead_letters()

    report, pending, dead = asyncio.run(_run())
    assert report.retried == 1
    assert pending == 1
    assert dead == []


def test_drain_without_remote_keeps_records(open_runtime):
    async def _run():
        async with open_runtime(account_id="acct-1") as rt:
            report = await rt.outbox.drain()
            return report, await rt.outbox.pending_count()

    report, pending = asyncio.run(_run())
    assert report.sent == 0
    assert pending == 1


def test_backing_off_records_do_not_starve_unrelated_ones(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote, OUTBOX_BATCH_SIZE=3) as rt:
            await rt.outbox.drain()
            for name in ("A", "B", "C"):
                bucket = await rt.buckets.add(name)
                remote.fail(bucket.id, SyncTransient("503 upstream", status_code=503))
            other = await rt.buckets.add("Unrelated")

            first = await rt.outbox.drain()
            second = await rt.outbox.drain()
            return other.id, first, second

    other_id, first, second = asyncio.run(_run())
    assert (first.sent, first.retried) == (0, 3)
    assert (second.sent, second.deferred) == (1, 3)
    assert other_id in remote.rows["buckets"]


class ForeignKeyRemoteStore(FakeRemoteStore):
    """Rejects a task whose bucket the remote has not seen yet."""

    async def upsert(self, table, row):
        if table == "tasks" and row.get("bucket_id") not in self.rows.get("buckets", {}):
            self.calls.append(("upsert", table, row["id"]))
            raise SyncPermanent("409 foreign key violation", status_code=409)
        await super().upsert(table, row)


def test_child_rows_wait_for_their_parent(open_runtime, clock):
    remote = ForeignKeyRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            await rt.outbox.drain()
            work = await rt.buckets.add("Work")
            remote.fail(work.id, SyncTransient("503 upstream", status_code=503))
            task = await rt.tasks.add("Child", work.id)

            first = await rt.outbox.drain()
            clock.advance(2)
            second = await rt.outbox.drain()
            return task.id, first, second, await rt.outbox.dead_letters()

    task_id, first, second, dead = asyncio.run(_run())
    assert (first.retried, first.deferred, first.dead) == (1, 1, 0)
    assert (second.sent, second.dead) == (2, 0)
    assert dead == []
    assert task_id in remote.rows["tasks"]
