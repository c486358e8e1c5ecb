"""Tests for SqliteSnapshotStore."""

from __future__ import annotations

import asyncio

import aiosqlite
import pytest
import pytest_asyncio

from taskforce.storage.snapshot import PersistenceSink, SqliteSnapshotStore
from taskforce.tasks.models import Task, TaskStatus


def _task(task_id: str, status: TaskStatus = TaskStatus.PENDING) -> Task:
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        description="d",
        estimated_duration=1000,
        status=status,
    )


@pytest_asyncio.fixture
async def snapshots(tmp_path):
    store = SqliteSnapshotStore(str(tmp_path / "snap" / "tasks.db"))
    await store.init()
    yield store
    await store.close()


class TestSqliteSnapshotStore:
    def test_is_a_persistence_sink(self, tmp_path):
        assert isinstance(SqliteSnapshotStore(str(tmp_path / "x.db")), PersistenceSink)

    @pytest.mark.asyncio
    async def test_save_and_load(self, snapshots):
        task = _task("a", TaskStatus.ASSIGNED)
        task.assigned_to = "alice"
        task.workload_delta = 15
        task.resources_held = True

        await snapshots.save_snapshot([task, _task("b")])
        loaded = {t.id: t for t in await snapshots.load_snapshot()}

        assert loaded["a"] == task
        assert loaded["b"].status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_save_replaces_previous_snapshot(self, snapshots):
        await snapshots.save_snapshot([_task("a"), _task("b")])
        await snapshots.save_snapshot([_task("c")])

        assert [t.id for t in await snapshots.load_snapshot()] == ["c"]

    @pytest.mark.asyncio
    async def test_empty_snapshot(self, snapshots):
        await snapshots.save_snapshot([_task("a")])
        await snapshots.save_snapshot([])
        assert await snapshots.load_snapshot() == []

    @pytest.mark.asyncio
    async def test_filter_by_status(self, snapshots):
        await snapshots.save_snapshot([_task("a"), _task("b", TaskStatus.IN_PROGRESS)])

        tasks = await snapshots.load_snapshot(status="in_progress")

        assert [t.id for t in tasks] == ["b"]

    @pytest.mark.asyncio
    async def test_reopen_database(self, tmp_path):
        path = str(tmp_path / "tasks.db")
        first = SqliteSnapshotStore(path)
        await first.save_snapshot([_task("a")])
        await first.close()

        second = SqliteSnapshotStore(path)
        try:
            assert [t.id for t in await second.load_snapshot()] == ["a"]
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_concurrent_first_saves_open_one_connection(self, tmp_path, monkeypatch):
        opened = []
        real_connect = aiosqlite.connect

        def counting_connect(*args, **kwargs):
            opened.append(args[0])
            return real_connect(*args, **kwargs)

        monkeypatch.setattr(aiosqlite, "connect", counting_connect)
        store = SqliteSnapshotStore(str(tmp_path / "fresh.db"))
        try:
            await asyncio.gather(
                store.save_snapshot([_task("a")]),
                store.save_snapshot([_task("a"), _task("b")]),
            )
            loaded = await store.load_snapshot()
        finally:
            await store.close()

        assert len(opened) == 1
        assert sorted(t.id for t in loaded) == ["a", "b"]
