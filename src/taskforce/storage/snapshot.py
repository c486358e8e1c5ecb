"""Best-effort task snapshots backed by SQLite."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiosqlite

from ..tasks.models import Task

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS task_snapshots (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    assigned_to TEXT,
    data_json TEXT NOT NULL,
    saved_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_task_snapshots_status ON task_snapshots(status);
"""


@runtime_checkable
class PersistenceSink(Protocol):
    """Anything that can durably record the current set of tasks."""

    async def save_snapshot(self, tasks: list[Task]) -> None: ...


class SqliteSnapshotStore:
    """Replaces the stored snapshot with the latest task set on every save."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the connection and create the schema."""
        async with self._init_lock:
            if self._db is not None:
                return
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(self.db_path)
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA)
            await db.commit()
            self._db = db

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def save_snapshot(self, tasks: list[Task]) -> None:
        await self.init()
        rows = [(t.id, t.status.value, t.assigned_to, t.model_dump_json()) for t in tasks]
        async with self._lock:
            await self._db.execute("DELETE FROM task_snapshots")
            if rows:
                await self._db.executemany(
                    """INSERT INTO task_snapshots (id, status, assigned_to, data_json)
                       VALUES (?, ?, ?, ?)""",
                    rows,
                )
            await self._db.commit()
        logger.debug("Saved %d tasks to snapshot", len(rows))

    async def load_snapshot(self, status: str | None = None) -> list[Task]:
        """Load the stored tasks, optionally filtered by status."""
        await self.init()
        if status:
            cursor = await self._db.execute(
                "SELECT data_json FROM task_snapshots WHERE status = ? ORDER BY saved_at",
                (status,),
            )
        else:
            cursor = await self._db.execute(
                "SELECT data_json FROM task_snapshots ORDER BY saved_at"
            )
        rows = await cursor.fetchall()

        tasks: list[Task] = []
        for row in rows:
            try:
                tasks.append(Task.model_validate_json(row["data_json"]))
            except ValueError:
                logger.warning("Skipping unreadable task snapshot row")
        logger.info("Loaded %d tasks from snapshot", len(tasks))
        return tasks
