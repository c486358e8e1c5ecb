"""Tests for the SQLite-backed job queue."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from taskforce.errors import TransportError
from taskforce.transport.base import JobState, QueueTransport
from taskforce.transport.sqlite import SqliteQueueTransport


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


def _transport(db_path: str) -> SqliteQueueTransport:
    return SqliteQueueTransport(db_path, queue_name="test", poll_interval=0.02)


@pytest_asyncio.fixture
async def producer(db_path):
    """Connected transport that never consumes."""
    transport = _transport(db_path)
    await transport.connect(consume=False)
    yield transport
    await transport.close()


class TestProducer:
    def test_satisfies_protocol(self, db_path):
        assert isinstance(_transport(db_path), QueueTransport)

    @pytest.mark.asyncio
    async def test_enqueue_requires_connection(self, db_path):
        transport = _transport(db_path)
        with pytest.raises(TransportError):
            await transport.enqueue("task", {"task_id": "t1"})
        assert (await transport.job_counts())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_jobs_listed_by_priority(self, producer):
        await producer.enqueue("task", {"task_id": "low"}, priority=-5)
        await producer.enqueue("task", {"task_id": "urgent"}, priority=10)
        await producer.enqueue("task", {"task_id": "medium"}, priority=0)

        jobs = await producer.list_jobs([JobState.WAITING])

        assert [j.data["task_id"] for j in jobs] == ["urgent", "medium", "low"]
        assert (await producer.job_counts())["waiting"] == 3

    @pytest.mark.asyncio
    async def test_delayed_jobs(self, producer):
        job = await producer.enqueue("task", {"task_id": "later"}, delay=60)

        assert job.state == JobState.DELAYED
        assert await producer.list_jobs(["waiting"]) == []
        assert [j.id for j in await producer.list_jobs(["delayed"])] == [job.id]

    @pytest.mark.asyncio
    async def test_remove(self, producer):
        job = await producer.enqueue("task", {"task_id": "t1"})

        assert await job.remove() is True
        assert await job.remove() is False
        assert await producer.list_jobs(["waiting"]) == []

    @pytest.mark.asyncio
    async def test_unknown_event(self, producer):
        with pytest.raises(ValueError):
            producer.on("exploded", lambda: None)

    @pytest.mark.asyncio
    async def test_connect_failure(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        transport = _transport(str(blocker / "queue.db"))
        errors = []
        transport.on("error", errors.append)

        with pytest.raises(TransportError):
            await transport.connect()

        assert not transport.is_ready()
        assert len(errors) == 1


class TestConsumer:
    @pytest.mark.asyncio
    async def test_processes_jobs(self, db_path):
        transport = _transport(db_path)
        done = asyncio.Event()
        results = []

        async def processor(job):
            return {"echo": job.data["task_id"]}

        def on_completed(job, result):
            results.append((job.data["task_id"], result))
            done.set()

        transport.process("task", processor)
        transport.on("completed", on_completed)
        await transport.connect()
        try:
            await transport.enqueue("task", {"task_id": "t1"})
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await transport.close()

        assert results == [("t1", {"echo": "t1"})]

    @pytest.mark.asyncio
    async def test_failed_jobs(self, db_path):
        transport = _transport(db_path)
        done = asyncio.Event()
        failures = []

        async def processor(job):
            raise RuntimeError("boom")

        def on_failed(job, error):
            failures.append(str(error))
            done.set()

        transport.process("task", processor)
        transport.on("failed", on_failed)
        await transport.connect()
        try:
            await transport.enqueue("task", {"task_id": "t1"})
            await asyncio.wait_for(done.wait(), timeout=2)
            [job] = await transport.list_jobs(["failed"])
        finally:
            await transport.close()

        assert failures == ["boom"]
        assert job.failed_reason == "boom"
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, db_path):
        transport = _transport(db_path)
        done = asyncio.Event()
        transport.process("task", lambda job: asyncio.sleep(0))
        transport.on("completed", lambda job, result: done.set())
        await transport.connect()
        try:
            await transport.pause()
            await transport.enqueue("task", {"task_id": "t1"})
            await asyncio.sleep(0.1)
            assert (await transport.job_counts())["waiting"] == 1

            await transport.resume()
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_orphaned_active_jobs_are_requeued(self, db_path):
        started = asyncio.Event()

        async def hang(job):
            started.set()
            await asyncio.sleep(3600)

        first = _transport(db_path)
        first.process("task", hang)
        await first.connect()
        await first.enqueue("task", {"task_id": "t1"})
        await asyncio.wait_for(started.wait(), timeout=2)
        # Simulates a crash: the job row is left active
        await first.close()

        second = _transport(db_path)
        stalled = []
        done = asyncio.Event()
        second.on("stalled", lambda job: stalled.append(job.data["task_id"]))
        second.on("completed", lambda job, result: done.set())
        second.process("task", lambda job: asyncio.sleep(0))
        await second.connect()
        try:
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await second.close()

        assert stalled == ["t1"]
