import asyncio

from sqlalchemy import select

from locu.identity import LOCAL_OWNER_ID
from locu.models import Bucket, Session, Task, TimeEntry
from locu.timer import ReconcileOutcome

from fakes import FakeRemoteStore

STAMP = "2026-10-17T07:00:00.000+00:00"


def _remote_bucket(bucket_id, name, owner_id="acct-1", position=0, is_default=False):
    return {"id": bucket_id, "owner_id": owner_id, "name": name, "icon": None, "color": None,
            "position": position, "is_default": is_default, "created_at": STAMP, "updated_at": STAMP}


def _remote_task(task_id, title, bucket_id, owner_id="acct-1", **extra):
    row = {"id": task_id, "owner_id": owner_id, "bucket_id": bucket_id, "title": title, "section": "sooner",
           "status": "active", "source": "manual", "source_id": None, "position": 0,
           "created_at": STAMP, "updated_at": STAMP}
    row.update(extra)
    return row


def _put(remote, table, row):
    remote.rows.setdefault(table, {})[row["id"]] = row


async def _all(rt, model):
    async with rt.store.transaction() as db:
        return (await db.execute(select(model))).scalars().all()


def test_sign_in_adopts_anonymous_rows_and_queues_them(open_runtime, clock):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(remote=remote) as rt:
            inbox = await rt.buckets.get_default()
            work = await rt.buckets.add("Work")
            task = await rt.tasks.add("Plan sprint", work.id)
            await rt.timer.start(task.id)
            clock.advance(60)
            await rt.timer.stop()
            assert await rt.outbox.pending_count() == 0

            counts = await rt.mirror.adopt_local_data("acct-9")
            pending = await rt.outbox.pending_count()
            report = await rt.outbox.drain()
            owners = {b.owner_id for b in await _all(rt, Bucket)} | {t.owner_id for t in await _all(rt, Task)}
            return inbox, work, rt.identity.owner_id, counts, pending, report, owners

    inbox, work, owner, counts, pending, report, owners = asyncio.run(_run())
    assert owner == "acct-9"
    assert counts == {"buckets": 2, "tasks": 1, "sessions": 1, "time_entries": 1, "import_rules": 0}
    assert pending == 5
    assert report.sent == 5
    assert owners == {"acct-9"}
    assert set(remote.rows["buckets"]) == {inbox.id, work.id}
    assert all(row["owner_id"] == "acct-9" for row in remote.rows["buckets"].values())


def test_sign_in_folds_local_inbox_into_existing_account_inbox(open_runtime):
    async def _run():
        async with open_runtime(remote=FakeRemoteStore()) as rt:
            local_inbox = await rt.buckets.get_default()
            task = await rt.tasks.add("Buy stamps", local_inbox.id)
            async with rt.store.transaction() as db:
                db.add(Bucket(**_remote_bucket("acct-inbox", "Inbox", owner_id="acct-9", is_default=True)))

            await rt.mirror.adopt_local_data("acct-9")
            buckets = await _all(rt, Bucket)
            return local_inbox, await rt.tasks.get(task.id), buckets

    local_inbox, task, buckets = asyncio.run(_run())
    assert [(b.id, b.owner_id, b.is_default) for b in buckets] == [("acct-inbox", "acct-9", True)]
    assert task.bucket_id == "acct-inbox"
    assert task.owner_id == "acct-9"


def test_pull_merges_remote_rows_and_sanitizes_references(open_runtime, clock):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            inbox = await rt.buckets.get_default()
            local = await rt.tasks.add("Local copy", inbox.id)
            await rt.outbox.drain()
            await rt.tasks.update(local.id, title="Edited offline")

            _put(remote, "buckets", _remote_bucket("b-errands", "Errands", position=1))
            _put(remote, "tasks", _remote_task(local.id, "Server copy", inbox.id))
            _put(remote, "tasks", _remote_task("t-orphan", "Orphan", "b-ghost", connection_id="c-gone"))
            _put(remote, "tasks", _remote_task("t-done", "Done", inbox.id, status="completed"))
            _put(remote, "tasks", _remote_task("t-other", "Not mine", inbox.id, owner_id="acct-2"))
            _put(remote, "sessions", {"id": "s-1", "owner_id": "acct-1", "task_id": "t-orphan",
                                      "started_at": "2026-10-17T08:00:00.000+00:00", "ended_at": None,
                                      "is_active": True, "device_id": "phone",
                                      "created_at": "2026-10-17T08:00:00.000+00:00"})
            _put(remote, "time_entries", {"id": "e-1", "session_id": "s-1", "task_id": "t-orphan",
                                          "owner_id": "acct-1", "started_at": "2026-10-17T08:00:00.000+00:00",
                                          "ended_at": "2026-10-17T08:10:00.000+00:00", "duration_seconds": None,
                                          "device_id": "phone", "created_at": "2026-10-17T08:00:00.000+00:00"})
            _put(remote, "time_entries", {"id": "e-lost", "session_id": "s-unknown", "task_id": "t-orphan",
                                          "owner_id": "acct-1", "started_at": "2026-10-17T08:30:00.000+00:00",
                                          "device_id": "phone", "created_at": "2026-10-17T08:30:00.000+00:00"})

            counts = await rt.mirror.pull()
            tasks = {t.id: t for t in await _all(rt, Task)}
            entries = {e.id: e for e in await _all(rt, TimeEntry)}
            return inbox, local, counts, tasks, entries, await _all(rt, Bucket)

    inbox, local, counts, tasks, entries, buckets = asyncio.run(_run())
    assert tasks[local.id].title == "Edited offline"
    assert tasks["t-orphan"].bucket_id == inbox.id
    assert tasks["t-orphan"].connection_id is None
    assert "t-done" not in tasks and "t-other" not in tasks
    assert {b.id for b in buckets} == {inbox.id, "b-errands"}
    assert entries["e-1"].duration_seconds == 600
    assert "e-lost" not in entries
    assert counts["tasks"] == 1
    assert counts["sessions"] == 1
    assert counts["time_entries"] == 1
    assert counts["skipped"] == 2


def test_pull_adopts_the_server_default_bucket(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            fresh_inbox = await rt.buckets.get_default()
            task = await rt.tasks.add("Captured on new device", fresh_inbox.id)
            _put(remote, "buckets", _remote_bucket("server-inbox", "Inbox", is_default=True))
            await rt.mirror.pull()
            defaults = [b for b in await _all(rt, Bucket) if b.is_default]
            return defaults, await rt.tasks.get(task.id)

    defaults, task = asyncio.run(_run())
    assert [b.id for b in defaults] == ["server-inbox"]
    assert task.bucket_id == "server-inbox"


def test_sync_now_resumes_a_session_running_elsewhere(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(account_id="acct-1", remote=remote) as rt:
            inbox = await rt.buckets.get_default()
            task = await rt.tasks.add("Pairing", inbox.id)
            _put(remote, "sessions", {"id": "s-phone", "owner_id": "acct-1", "task_id": task.id,
                                      "started_at": "2026-10-17T08:50:00.000+00:00", "ended_at": None,
                                      "is_active": True, "device_id": "phone",
                                      "created_at": "2026-10-17T08:50:00.000+00:00"})
            _put(remote, "time_entries", {"id": "e-phone", "session_id": "s-phone", "task_id": task.id,
                                          "owner_id": "acct-1", "started_at": "2026-10-17T08:50:00.000+00:00",
                                          "ended_at": None, "duration_seconds": None, "device_id": "phone",
                                          "created_at": "2026-10-17T08:50:00.000+00:00"})
            return await rt.mirror.sync_now(), await rt.outbox.pending_count()

    result, pending = asyncio.run(_run())
    assert result.pulled["sessions"] == 1
    assert result.drained.sent == 2
    assert result.reconcile.outcome == ReconcileOutcome.resumed
    assert result.reconcile.session_id == "s-phone"
    assert result.reconcile.elapsed_seconds == 600
    assert pending == 0


def test_pull_is_a_noop_while_anonymous(open_runtime):
    remote = FakeRemoteStore()
    _put(remote, "buckets", _remote_bucket("b-x", "X", owner_id=LOCAL_OWNER_ID))

    async def _run():
        async with open_runtime(remote=remote) as rt:
            return await rt.mirror.pull(), await _all(rt, Session)

    counts, sessions = asyncio.run(_run())
    assert counts["buckets"] == 0
    assert sessions == []


def test_signed_in_account_survives_restart(open_runtime):
    async def _run():
        async with open_runtime() as rt:
            await rt.buckets.add("Work")
            await rt.mirror.adopt_local_data("acct-1")

        async with open_runtime() as restarted:
            owner = restarted.identity.owner_id
            names = [b.name for b in await restarted.buckets.list()]
            await restarted.mirror.sign_out()

        async with open_runtime() as signed_out:
            return owner, names, signed_out.identity.is_anonymous

    owner, names, anonymous_after_sign_out = asyncio.run(_run())
    assert owner == "acct-1"
    assert names == ["Inbox", "Work"]
    assert anonymous_after_sign_out is True


def test_second_process_follows_sign_in(open_runtime):
    remote = FakeRemoteStore()

    async def _run():
        async with open_runtime(remote=remote) as api, open_runtime(remote=remote) as worker:
            await api.mirror.adopt_local_data("acct-1")
            before = worker.identity.is_anonymous
            await worker.load_identity()
            report = await worker.outbox.drain()
            return before, worker.identity.owner_id, report.sent

    before, owner, sent = asyncio.run(_run())
    assert before is True
    assert owner == "acct-1"
    assert sent == 1
