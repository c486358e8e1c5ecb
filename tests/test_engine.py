"""End-to-end lifecycle tests for TaskEngine."""

from __future__ import annotations

import asyncio

import pytest

from taskforce.config import EngineConfig
from taskforce.engine.assignment import DispatchMode
from taskforce.engine.core import TaskEngine
from taskforce.errors import InvalidStateError
from taskforce.events import EventType
from taskforce.storage.snapshot import SqliteSnapshotStore
from taskforce.tasks.models import CommentType, TaskResult, TaskStatus
from taskforce.workers.models import WorkerStatus


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_assign_complete_resolve(self, engine, transport, directory, make_spec):
        task_id = await engine.create_task(make_spec())
        await engine.assign_task(task_id, "alice")
        await transport.run_next()

        resolved = await engine.resolve_task(task_id, "Shipped")

        assert resolved.status == TaskStatus.RESOLVED
        assert engine.get_task(task_id).status == TaskStatus.RESOLVED
        assert [t.status for t in engine.get_history()] == [TaskStatus.RESOLVED]
        assert directory.get_by_id("alice").status == WorkerStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_reopen_and_reassign(self, engine, transport, directory, make_spec):
        task_id = await engine.create_task(make_spec())
        await engine.assign_task(task_id, "alice")
        await transport.run_next()

        task = await engine.reopen_task(task_id, "Missing tests", assign_to="bob")

        assert task.status == TaskStatus.ASSIGNED
        assert task.assigned_to == "bob"
        assert task.retry_count == 1
        assert task.comments[-1].comment_type == CommentType.REOPEN_REASON
        assert directory.get_by_id("bob").status == WorkerStatus.BUSY

    @pytest.mark.asyncio
    async def test_resolve_pending_task_rejected(self, engine, make_spec):
        task_id = await engine.create_task(make_spec())
        with pytest.raises(InvalidStateError):
            await engine.resolve_task(task_id)

    @pytest.mark.asyncio
    async def test_long_description_truncated_in_history(self, engine, transport, make_spec):
        task_id = await engine.create_task(make_spec(description="x" * 600))
        await engine.assign_task(task_id, "alice")
        await transport.run_next()

        assert len(engine.get_task(task_id).description) == 500

    @pytest.mark.asyncio
    async def test_task_stats(self, engine, transport, make_spec):
        done = await engine.create_task(make_spec())
        await engine.create_task(make_spec())
        await engine.assign_task(done, "alice")
        await transport.run_next()

        stats = engine.get_task_stats()
        assert stats["pending"] == 1
        assert stats["completed"] == 1


class TestAutoRetry:
    @pytest.mark.asyncio
    async def test_failed_attempt_is_reassigned(self, directory, config, make_spec):
        attempts = []

        async def flaky(task, worker):
            attempts.append(worker.id)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            return TaskResult(success=True, output="ok")

        config.auto_retry = True
        config.retry_backoff = 0.01
        engine = TaskEngine(directory, config=config, executor=flaky)
        completed = asyncio.Event()
        engine.on(EventType.TASK_COMPLETED, lambda e: completed.set())
        await engine.start()
        try:
            task_id = await engine.create_task(make_spec())
            await engine.assign_task(task_id)
            await asyncio.wait_for(completed.wait(), timeout=2)

            task = engine.get_task(task_id)
            assert task.status == TaskStatus.COMPLETED
            assert task.retry_count == 1
            assert attempts == ["alice", "alice"]
            assert directory.get_by_id("alice").load == 10
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_cancel_stops_pending_retry(self, directory, config, make_spec):
        async def broken(task, worker):
            raise RuntimeError("nope")

        config.auto_retry = True
        config.retry_backoff = 0.05
        engine = TaskEngine(directory, config=config, executor=broken)
        retried = asyncio.Event()
        engine.on(EventType.TASK_RETRY, lambda e: retried.set())
        await engine.start()
        try:
            task_id = await engine.create_task(make_spec())
            await engine.assign_task(task_id)
            await asyncio.wait_for(retried.wait(), timeout=2)

            await engine.cancel_task(task_id)
            await asyncio.sleep(0.1)

            assert engine.get_task(task_id) is None
            assert directory.get_by_id("alice").status == WorkerStatus.AVAILABLE
            assert directory.get_by_id("alice").load == 10
        finally:
            await engine.stop()


class TestQueueControls:
    @pytest.mark.asyncio
    async def test_queue_stats(self, engine, make_spec):
        task_id = await engine.create_task(make_spec())
        await engine.assign_task(task_id, "alice")

        stats = await engine.get_queue_stats()

        assert stats["mode"] == "durable"
        assert stats["jobs"]["waiting"] == 1

    @pytest.mark.asyncio
    async def test_pause_resume(self, engine, transport):
        await engine.pause_queue()
        assert transport.paused
        await engine.resume_queue()
        assert not transport.paused

    @pytest.mark.asyncio
    async def test_stop_closes_transport(self, directory, config, transport):
        engine = TaskEngine(directory, config=config, transport=transport)
        await engine.start()
        await engine.stop()
        assert transport.closed


class TestSqliteEngine:
    @pytest.mark.asyncio
    async def test_durable_round_trip(self, directory, tmp_path, make_spec):
        config = EngineConfig(
            db_path=str(tmp_path / "engine.db"),
            transport_poll_interval=0.02,
            auto_retry=False,
        )
        completed = asyncio.Event()

        async with TaskEngine.from_config(directory, config) as engine:
            engine.on(EventType.TASK_COMPLETED, lambda e: completed.set())
            task_id = await engine.create_task(make_spec())
            await engine.assign_task(task_id, "bob")
            await asyncio.wait_for(completed.wait(), timeout=2)

            assert engine.mode == DispatchMode.DURABLE
            assert engine.get_task(task_id).status == TaskStatus.COMPLETED
            assert directory.get_by_id("bob").performance_metrics["tests_executed"] == 1

    @pytest.mark.asyncio
    async def test_warm_restart_restores_tasks(self, directory, tmp_path, make_spec):
        config = EngineConfig(
            db_path=str(tmp_path / "engine.db"),
            durable_transport=False,
            auto_retry=False,
        )

        async with TaskEngine.from_config(directory, config) as engine:
            task_id = await engine.create_task(make_spec(title="Survives restart"))

        async with TaskEngine.from_config(directory, config) as engine:
            task = engine.get_task(task_id)
            assert task is not None
            assert task.title == "Survives restart"
            assert task.status == TaskStatus.PENDING

        snapshots = SqliteSnapshotStore(config.db_path)
        try:
            assert [t.id for t in await snapshots.load_snapshot()] == [task_id]
        finally:
            await snapshots.close()
