"""TaskEngine - the public entry point.

Wires the task store, worker directory, queue transport and the engine
components together and exposes the task lifecycle as one async API.

Usage:
    engine = TaskEngine.from_config(directory, EngineConfig.load())
    await engine.start()
    task_id = await engine.create_task({...})
    await engine.assign_task(task_id)
    ...
    await engine.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import EngineConfig
from ..errors import TaskforceError, TransportError
from ..events import Event, EventManager, EventType
from ..events.manager import EventCallback
from ..storage.snapshot import PersistenceSink, SqliteSnapshotStore
from ..tasks.models import Priority, Task, TaskCreate, TaskStatus, TaskUpdate
from ..tasks.store import TaskStore
from ..transport import base as transport_events
from ..transport.base import Job, QueueTransport
from ..transport.sqlite import SqliteQueueTransport
from ..workers.directory import WorkerDirectory
from ..workers.metrics import MetricRegistry
from .assignment import AssignmentEngine, DispatchMode, DispatchRecord
from .fleet import Assignment, FleetOperations, Recommendation, Redistribution
from .recovery import RecoveryCoordinator
from .runner import ExecutionRunner, TaskExecutor
from .workload import WorkloadLedger

logger = logging.getLogger(__name__)


class TaskEngine:
    """Task scheduling and lifecycle engine."""

    def __init__(
        self,
        directory: WorkerDirectory,
        config: EngineConfig | None = None,
        transport: QueueTransport | None = None,
        sink: PersistenceSink | None = None,
        executor: TaskExecutor | None = None,
        registry: MetricRegistry | None = None,
        events: EventManager | None = None,
    ):
        self.config = config or EngineConfig()
        self.events = events or EventManager()
        self.directory = directory
        self.transport = transport
        self.sink = sink

        self.store = TaskStore(self.events, sink=sink, config=self.config)
        self.ledger = WorkloadLedger(directory)
        self.recovery = RecoveryCoordinator(
            self.store,
            directory,
            self.ledger,
            self.events,
            transport=transport,
            config=self.config,
            registry=registry,
        )
        self.runner = ExecutionRunner(
            self.store, directory, self.events, self.recovery, executor=executor
        )
        self.assignment = AssignmentEngine(
            self.store,
            directory,
            self.ledger,
            self.events,
            self.runner,
            transport=transport,
            config=self.config,
        )
        self.fleet = FleetOperations(
            self.store, directory, self.assignment, self.recovery, config=self.config
        )

        self._retry_timers: dict[str, asyncio.Task[None]] = {}
        self._started = False
        self.events.on(EventType.TASK_RETRY, self._schedule_retry)

    @classmethod
    def from_config(
        cls,
        directory: WorkerDirectory,
        config: EngineConfig | None = None,
        executor: TaskExecutor | None = None,
    ) -> TaskEngine:
        """Build an engine with the SQLite transport and snapshot store from ``config``."""
        config = config or EngineConfig.load()
        transport = None
        if config.durable_transport:
            transport = SqliteQueueTransport(
                config.db_path,
                queue_name=config.queue_name,
                poll_interval=config.transport_poll_interval,
                concurrency=config.transport_concurrency,
                stalled_interval=config.stalled_interval,
            )
        sink = SqliteSnapshotStore(config.db_path) if config.persist_snapshots else None
        return cls(directory, config=config, transport=transport, sink=sink, executor=executor)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Restore persisted tasks and connect the transport.

        A transport that cannot connect puts the engine in fallback mode
        instead of failing startup.
        """
        if self._started:
            return
        self._started = True

        restored = await self._restore_snapshot()

        if self.transport is not None:
            self.transport.on(transport_events.ERROR, self.recovery.handle_queue_error)
            self.transport.on(transport_events.ACTIVE, self.recovery.handle_job_active)
            self.transport.on(transport_events.COMPLETED, self.recovery.handle_job_completed)
            self.transport.on(transport_events.FAILED, self.recovery.handle_job_failed)
            self.transport.on(transport_events.STALLED, self.recovery.handle_job_stalled)
            self.transport.process(self.config.job_name, self._process_job)
            try:
                await asyncio.wait_for(
                    self.transport.connect(), timeout=self.config.transport_timeout
                )
            except (TransportError, TimeoutError, OSError) as e:
                self.assignment.fail_over(e)

        if self.mode == DispatchMode.FALLBACK:
            # Nothing upstream will run restored in-flight tasks
            for task in restored:
                if task.status in (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS):
                    self.assignment.run_in_background(
                        DispatchRecord(task.id, task.assigned_to, task.dispatch_id or "")
                    )

        logger.info("Task engine started (%s, %d tasks restored)", self.mode, len(restored))

    async def _restore_snapshot(self) -> list[Task]:
        load = getattr(self.sink, "load_snapshot", None)
        if load is None:
            return []
        try:
            tasks = await load()
        except Exception as e:
            logger.error("Failed to load task snapshot: %s", e)
            return []
        self.store.restore(tasks)
        return tasks

    async def stop(self) -> None:
        """Cancel pending retries, stop execution and flush the last snapshot."""
        for timer in self._retry_timers.values():
            timer.cancel()
        if self._retry_timers:
            await asyncio.gather(*self._retry_timers.values(), return_exceptions=True)
            self._retry_timers.clear()

        await self.assignment.drain(cancel=True)
        if self.transport is not None:
            await self.transport.close()

        self.store.persist()
        await self.store.flush()
        close = getattr(self.sink, "close", None)
        if close is not None:
            await close()

        self._started = False
        logger.info("Task engine stopped")

    async def __aenter__(self) -> TaskEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    @property
    def mode(self) -> DispatchMode:
        return self.assignment.mode

    async def _process_job(self, job: Job) -> Any:
        record = DispatchRecord.from_payload(job.data)
        return await self.runner.execute(record.task_id, record.worker_id, record.dispatch_id)

    # --- Retries ---

    async def _schedule_retry(self, event: Event) -> None:
        if not self.config.auto_retry:
            return
        task_id = event.data["task_id"]
        retry_count = int(event.data.get("retry_count", 1))
        delay = self.config.retry_backoff * 2 ** max(0, retry_count - 1)

        previous = self._retry_timers.pop(task_id, None)
        if previous is not None:
            previous.cancel()
        timer = asyncio.create_task(self._retry_later(task_id, delay), name=f"retry-{task_id}")
        self._retry_timers[task_id] = timer
        timer.add_done_callback(lambda t: self._forget_timer(task_id, t))

    def _forget_timer(self, task_id: str, timer: asyncio.Task[None]) -> None:
        if self._retry_timers.get(task_id) is timer:
            del self._retry_timers[task_id]

    async def _retry_later(self, task_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        task = self.store.get_active_task(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return
        try:
            await self.assignment.assign_task(task_id)
        except TaskforceError as e:
            logger.warning("Retry of task %s deferred: %s", task_id, e)

    # --- Events ---

    def on(self, event_type: EventType | None, callback: EventCallback) -> None:
        self.events.on(event_type, callback)

    def off(self, event_type: EventType | None, callback: EventCallback) -> None:
        self.events.off(event_type, callback)

    # --- Tasks ---

    async def create_task(self, spec: TaskCreate | dict[str, Any]) -> str:
        return await self.store.create_task(spec)

    async def add_task(self, task: Task | dict[str, Any]) -> str:
        return await self.store.add_task(task)

    async def update_task(self, task_id: str, fields: TaskUpdate | dict[str, Any]) -> Task:
        return await self.store.update_task(task_id, fields)

    def get_task(self, task_id: str) -> Task | None:
        return self.store.get_task(task_id)

    def get_all_tasks(self) -> list[Task]:
        return self.store.get_all_tasks()

    def get_tasks_by_status(self, status: TaskStatus | str) -> list[Task]:
        return self.store.get_tasks_by_status(status)

    def get_tasks_by_worker(self, worker_id: str) -> list[Task]:
        return self.store.get_tasks_by_worker(worker_id)

    def get_history(self, limit: int = 100) -> list[Task]:
        return self.store.get_history(limit)

    def get_task_stats(self) -> dict[str, int]:
        return self.store.get_task_stats()

    async def assign_task(self, task_id: str, worker_id: str | None = None) -> Task:
        return await self.assignment.assign_task(task_id, worker_id)

    async def cancel_task(self, task_id: str) -> Task:
        self._cancel_retry(task_id)
        return await self.recovery.cancel(task_id)

    async def delete_task(self, task_id: str) -> Task:
        self._cancel_retry(task_id)
        return await self.recovery.delete(task_id)

    def _cancel_retry(self, task_id: str) -> None:
        timer = self._retry_timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()

    async def resolve_task(
        self, task_id: str, comment: str | None = None, author_id: str = "system"
    ) -> Task:
        return await self.store.resolve_task(task_id, comment, author_id)

    async def reopen_task(
        self,
        task_id: str,
        reason: str | None,
        author_id: str = "system",
        assign_to: str | None = None,
    ) -> Task:
        """Reopen a completed or resolved task, optionally assigning it straight away."""
        task = await self.store.reopen_task(task_id, reason, author_id)
        if assign_to is not None:
            task = await self.assignment.assign_task(task_id, assign_to)
        return task

    # --- Fleet ---

    async def assign_tasks_to_team(
        self,
        task_ids: list[str],
        skills: list[str],
        team_size: int,
        department: str | None = None,
    ) -> list[Assignment]:
        return await self.fleet.assign_tasks_to_team(task_ids, skills, team_size, department)

    async def redistribute_workload(
        self,
        overloaded_threshold: int | None = None,
        underloaded_threshold: int | None = None,
    ) -> list[Redistribution]:
        return await self.fleet.redistribute_workload(overloaded_threshold, underloaded_threshold)

    def get_recommendations(
        self, required_skills: list[str], priority: Priority = Priority.MEDIUM
    ) -> Recommendation:
        return self.fleet.get_recommendations(required_skills, priority)

    async def assign_pending_tasks(self) -> list[Assignment]:
        return await self.fleet.assign_pending_tasks()

    def get_team_capacity(self, department: str | None = None) -> dict[str, float]:
        return self.fleet.get_team_capacity(department)

    # --- Queue ---

    async def get_queue_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "mode": str(self.mode),
            "inflight": self.assignment.inflight,
            "jobs": {},
        }
        if self.transport is not None and self.transport.is_ready():
            try:
                stats["jobs"] = await asyncio.wait_for(
                    self.transport.job_counts(), timeout=self.config.transport_timeout
                )
            except (TransportError, TimeoutError, OSError) as e:
                logger.warning("Could not read queue stats: %s", e)
        return stats

    async def pause_queue(self) -> None:
        if self.transport is not None:
            await self.transport.pause()
            logger.info("Queue paused")

    async def resume_queue(self) -> None:
        if self.transport is not None:
            await self.transport.resume()
            logger.info("Queue resumed")
