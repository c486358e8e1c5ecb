"""SQLite-backed durable job queue.

Jobs are rows in a ``jobs`` table, so anything enqueued survives a restart.
A poll loop claims waiting jobs (highest priority first, then FIFO) with an
atomic ``UPDATE ... WHERE state = 'waiting'`` and runs them on background
coroutines, up to ``concurrency`` at a time. Jobs left ``active`` by a
processor that is no longer running are reported as stalled and requeued.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import secrets
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import aiosqlite

from ..errors import TransportError
from .base import (
    ACTIVE,
    COMPLETED,
    ERROR,
    FAILED,
    LIFECYCLE_EVENTS,
    READY,
    STALLED,
    WAITING,
    Job,
    JobProcessor,
    JobState,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    name TEXT NOT NULL,
    data_json TEXT NOT NULL DEFAULT '{}',
    state TEXT NOT NULL DEFAULT 'waiting'
        CHECK (state IN ('waiting', 'active', 'delayed', 'completed', 'failed')),
    priority INTEGER NOT NULL DEFAULT 0,
    run_at REAL NOT NULL,
    attempts_made INTEGER NOT NULL DEFAULT 0,
    failed_reason TEXT,
    result_json TEXT,
    created_at REAL NOT NULL,
    locked_at REAL,
    finished_at REAL
);
CREATE INDEX IF NOT EXISTS idx_jobs_queue_state ON jobs(queue, state, priority);
"""


def _dump_result(result: Any) -> str:
    if hasattr(result, "model_dump_json"):
        return result.model_dump_json()
    return json.dumps(result, default=str)


class SqliteQueueTransport:
    """QueueTransport over a local SQLite database."""

    def __init__(
        self,
        db_path: str,
        queue_name: str = "taskforce-tasks",
        poll_interval: float = 0.5,
        concurrency: int = 4,
        stalled_interval: float = 30.0,
        keep_completed: int = 10,
        keep_failed: int = 5,
    ):
        self.db_path = db_path
        self.queue_name = queue_name
        self.poll_interval = poll_interval
        self.concurrency = concurrency
        self.stalled_interval = stalled_interval
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed

        self._db: aiosqlite.Connection | None = None
        self._ready = False
        self._paused = False
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._processors: dict[str, JobProcessor] = {}
        self._running_jobs: dict[str, asyncio.Task[None]] = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._last_stalled_check = 0.0

    # --- Setup ---

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._handlers[event].append(handler)

    def process(self, job_name: str, processor: JobProcessor) -> None:
        self._processors[job_name] = processor

    async def connect(self, consume: bool = True) -> None:
        """Open the database, requeue orphaned jobs and start polling.

        With ``consume=False`` the queue is opened for producing and inspection
        only: nothing is requeued and no jobs are processed.
        """
        if self._ready:
            return
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
            if consume:
                await self._requeue_stalled(older_than=None)
        except (aiosqlite.Error, OSError) as e:
            self._ready = False
            await self._emit(ERROR, e)
            raise TransportError(f"Cannot open job queue at {self.db_path}: {e}") from e

        self._ready = True
        logger.info("Job queue %s is ready", self.queue_name)
        await self._emit(READY)
        if consume:
            self._poll_task = asyncio.create_task(
                self._poll_loop(), name=f"queue-{self.queue_name}"
            )

    def is_ready(self) -> bool:
        return self._ready and self._db is not None

    async def close(self) -> None:
        """Stop polling and cancel in-flight jobs (they are requeued as stalled next start)."""
        self._ready = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        for job_task in self._running_jobs.values():
            job_task.cancel()
        if self._running_jobs:
            await asyncio.gather(*self._running_jobs.values(), return_exceptions=True)
            self._running_jobs.clear()

        if self._db is not None:
            await self._db.close()
            self._db = None
        logger.info("Job queue %s closed", self.queue_name)

    async def pause(self) -> None:
        self._paused = True
        logger.info("Job queue %s paused", self.queue_name)

    async def resume(self) -> None:
        self._paused = False
        logger.info("Job queue %s resumed", self.queue_name)

    # --- Producer side ---

    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        delay: float = 0.0,
    ) -> Job:
        if not self.is_ready():
            raise TransportError(f"Job queue {self.queue_name} is not connected")

        job_id = secrets.token_hex(8)
        now = time.time()
        state = JobState.DELAYED if delay > 0 else JobState.WAITING
        try:
            await self._db.execute(
                """INSERT INTO jobs (id, queue, name, data_json, state, priority, run_at,
                   created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    job_id,
                    self.queue_name,
                    job_name,
                    json.dumps(payload),
                    state.value,
                    priority,
                    now + max(0.0, delay),
                    now,
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            await self._emit(ERROR, e)
            raise TransportError(f"Failed to enqueue job {job_name}: {e}") from e

        job = Job(
            id=job_id,
            name=job_name,
            data=payload,
            state=state,
            priority=priority,
            remover=self._remove,
        )
        if state == JobState.WAITING:
            await self._emit(WAITING, job_id)
        return job

    async def list_jobs(self, states: Iterable[JobState | str]) -> list[Job]:
        if not self.is_ready():
            raise TransportError(f"Job queue {self.queue_name} is not connected")
        wanted = [JobState(s).value for s in states]
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        cursor = await self._db.execute(
            f"""SELECT * FROM jobs WHERE queue = ? AND state IN ({placeholders})
                ORDER BY priority DESC, created_at ASC""",
            (self.queue_name, *wanted),
        )
        return [self._row_to_job(row) for row in await cursor.fetchall()]

    async def job_counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        if not self.is_ready():
            return counts
        cursor = await self._db.execute(
            "SELECT state, COUNT(*) AS n FROM jobs WHERE queue = ? GROUP BY state",
            (self.queue_name,),
        )
        for row in await cursor.fetchall():
            counts[row["state"]] = row["n"]
        return counts

    async def _remove(self, job_id: str) -> bool:
        if not self.is_ready():
            return False
        cursor = await self._db.execute(
            "DELETE FROM jobs WHERE id = ? AND queue = ?", (job_id, self.queue_name)
        )
        await self._db.commit()
        running = self._running_jobs.get(job_id)
        if running is not None:
            running.cancel()
        return cursor.rowcount > 0

    # --- Consumer side ---

    async def _poll_loop(self) -> None:
        """Claim due jobs and dispatch them to their processors."""
        while self._ready:
            try:
                self._cleanup_finished_jobs()

                if time.time() - self._last_stalled_check >= self.stalled_interval:
                    await self._requeue_stalled(older_than=self.stalled_interval)

                if not self._paused and len(self._running_jobs) < self.concurrency:
                    await self._promote_delayed()
                    jobs = await self._claim_jobs(self.concurrency - len(self._running_jobs))
                    for job in jobs:
                        self._running_jobs[job.id] = asyncio.create_task(
                            self._run_job(job), name=f"job-{job.id}"
                        )
            except aiosqlite.Error as e:
                logger.warning("Job queue poll failed: %s", e)
                await self._emit(ERROR, e)
            except Exception:
                logger.exception("Unexpected error in job queue poll loop")

            await asyncio.sleep(self.poll_interval)

    def _cleanup_finished_jobs(self) -> None:
        finished = [jid for jid, t in self._running_jobs.items() if t.done()]
        for jid in finished:
            job_task = self._running_jobs.pop(jid)
            if not job_task.cancelled() and job_task.exception() is not None:
                logger.error("Job %s raised an unhandled exception: %s", jid, job_task.exception())

    async def _promote_delayed(self) -> None:
        await self._db.execute(
            """UPDATE jobs SET state = 'waiting'
               WHERE queue = ? AND state = 'delayed' AND run_at <= ?""",
            (self.queue_name, time.time()),
        )
        await self._db.commit()

    async def _claim_jobs(self, limit: int) -> list[Job]:
        cursor = await self._db.execute(
            """SELECT id FROM jobs WHERE queue = ? AND state = 'waiting'
               ORDER BY priority DESC, created_at ASC, rowid ASC LIMIT ?""",
            (self.queue_name, limit),
        )
        candidate_ids = [row["id"] for row in await cursor.fetchall()]

        claimed: list[Job] = []
        for job_id in candidate_ids:
            cursor = await self._db.execute(
                """UPDATE jobs SET state = 'active', locked_at = ?,
                   attempts_made = attempts_made + 1
                   WHERE id = ? AND state = 'waiting'""",
                (time.time(), job_id),
            )
            if cursor.rowcount == 0:
                continue
            cursor = await self._db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
            claimed.append(self._row_to_job(row))
        await self._db.commit()
        return claimed

    async def _run_job(self, job: Job) -> None:
        processor = self._processors.get(job.name)
        if processor is None:
            error = TransportError(f"No processor registered for job '{job.name}'")
            await self._finish(job, JobState.FAILED, failed_reason=error.message)
            await self._emit(FAILED, job, error)
            return

        await self._emit(ACTIVE, job)
        try:
            result = await processor(job)
        except asyncio.CancelledError:
            logger.info("Job %s was cancelled", job.id)
            raise
        except Exception as e:
            logger.warning("Job %s failed: %s", job.id, e)
            await self._finish(job, JobState.FAILED, failed_reason=str(e))
            await self._emit(FAILED, job, e)
        else:
            await self._finish(job, JobState.COMPLETED, result_json=_dump_result(result))
            await self._emit(COMPLETED, job, result)

    async def _finish(
        self,
        job: Job,
        state: JobState,
        failed_reason: str | None = None,
        result_json: str | None = None,
    ) -> None:
        if not self.is_ready():
            return
        await self._db.execute(
            """UPDATE jobs SET state = ?, failed_reason = ?, result_json = ?, finished_at = ?
               WHERE id = ?""",
            (state.value, failed_reason, result_json, time.time(), job.id),
        )
        keep = self.keep_completed if state == JobState.COMPLETED else self.keep_failed
        await self._db.execute(
            """DELETE FROM jobs WHERE queue = ? AND state = ? AND id NOT IN (
                   SELECT id FROM jobs WHERE queue = ? AND state = ?
                   ORDER BY finished_at DESC LIMIT ?)""",
            (self.queue_name, state.value, self.queue_name, state.value, keep),
        )
        await self._db.commit()
        job.state = state
        job.failed_reason = failed_reason

    async def _requeue_stalled(self, older_than: float | None) -> None:
        """Requeue active jobs no local coroutine is running.

        With ``older_than=None`` every active job is considered orphaned
        (used at connect time, when nothing can be running yet).
        """
        self._last_stalled_check = time.time()
        if older_than is None:
            cursor = await self._db.execute(
                "SELECT * FROM jobs WHERE queue = ? AND state = 'active'", (self.queue_name,)
            )
        else:
            cursor = await self._db.execute(
                """SELECT * FROM jobs WHERE queue = ? AND state = 'active'
                   AND locked_at < ?""",
                (self.queue_name, time.time() - older_than),
            )
        stalled = [
            self._row_to_job(row)
            for row in await cursor.fetchall()
            if row["id"] not in self._running_jobs
        ]
        for job in stalled:
            await self._db.execute(
                "UPDATE jobs SET state = 'waiting', locked_at = NULL WHERE id = ?", (job.id,)
            )
        await self._db.commit()

        for job in stalled:
            logger.warning("Job %s stalled, requeued", job.id)
            job.state = JobState.WAITING
            await self._emit(STALLED, job)

    # --- Helpers ---

    def _row_to_job(self, row: aiosqlite.Row) -> Job:
        return Job(
            id=row["id"],
            name=row["name"],
            data=json.loads(row["data_json"] or "{}"),
            state=JobState(row["state"]),
            priority=row["priority"],
            attempts_made=row["attempts_made"],
            failed_reason=row["failed_reason"],
            remover=self._remove,
        )

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Queue %s handler failed", event)
