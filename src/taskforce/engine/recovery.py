"""Outcome handling: completion, retry/failure, cancellation and deletion.

Every path that ends an assignment goes through here so worker resources are
released exactly once and duplicate outcome reports are harmless.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import EngineConfig
from ..errors import InvalidStateError, NotFoundError, TransportError
from ..events import EventManager, EventType
from ..tasks.models import Task, TaskResult, TaskStatus, utcnow
from ..tasks.store import TaskStore
from ..transport.base import Job, JobState, QueueTransport
from ..workers import metrics
from ..workers.directory import WorkerDirectory
from ..workers.metrics import MetricRegistry, build_default_registry
from .workload import WorkloadLedger

logger = logging.getLogger(__name__)

# States in which a queued job still represents pending work
_REMOVABLE_JOB_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


class RecoveryCoordinator:
    def __init__(
        self,
        store: TaskStore,
        directory: WorkerDirectory,
        ledger: WorkloadLedger,
        events: EventManager,
        transport: QueueTransport | None = None,
        config: EngineConfig | None = None,
        registry: MetricRegistry | None = None,
    ):
        self.store = store
        self.directory = directory
        self.ledger = ledger
        self.events = events
        self.transport = transport
        self.config = config or EngineConfig()
        self.registry = registry or build_default_registry()

    # --- Outcomes ---

    def _current(self, task_id: str, dispatch_id: str | None, outcome: str) -> Task | None:
        task = self.store.get_active_task(task_id)
        if task is None or task.is_terminal:
            logger.debug("Ignoring %s report for finished task %s", outcome, task_id)
            return None
        if dispatch_id is not None and task.dispatch_id != dispatch_id:
            logger.debug("Ignoring %s report for stale dispatch %s", outcome, dispatch_id)
            return None
        return task

    async def on_completion(
        self, task_id: str, result: TaskResult, dispatch_id: str | None = None
    ) -> Task | None:
        task = self._current(task_id, dispatch_id, "completion")
        if task is None:
            return None

        worker_id = task.assigned_to
        task.status = TaskStatus.COMPLETED
        task.result = result
        task.error = None
        task.completed_at = task.completed_at or utcnow()

        self.ledger.release(task)
        self._record_metrics(worker_id, metrics.COMPLETED)
        entry = self.store.move_to_history(task)

        logger.info("Task %s completed by %s", task_id, worker_id)
        await self.events.emit(
            EventType.TASK_COMPLETED, task_id=task_id, worker_id=worker_id, result=result
        )
        return entry

    async def on_failure(
        self, task_id: str, error: BaseException | str, dispatch_id: str | None = None
    ) -> Task | None:
        """Schedule a retry, or fail the task for good once retries are spent.

        ``max_retries`` counts retries after the first attempt, so a task gets
        ``max_retries + 1`` executions in total.
        """
        task = self._current(task_id, dispatch_id, "failure")
        if task is None:
            return None

        message = str(error) or type(error).__name__
        retryable = task.retry_count < task.max_retries
        task.retry_count += 1
        task.error = message

        if retryable:
            # The worker stays bound until the task is assigned again
            task.status = TaskStatus.PENDING
            task.started_at = None
            task.completed_at = None
            self.store.persist()
            logger.warning(
                "Task %s failed (attempt %d of %d): %s",
                task_id,
                task.retry_count,
                task.max_retries + 1,
                message,
            )
            await self.events.emit(
                EventType.TASK_RETRY,
                task_id=task_id,
                retry_count=task.retry_count,
                error=message,
            )
            return task

        worker_id = task.assigned_to
        task.status = TaskStatus.FAILED
        self.ledger.release(task)
        self._record_metrics(worker_id, metrics.FAILED)
        task.assigned_to = None
        entry = self.store.move_to_history(task)

        logger.error(
            "Task %s failed permanently after %d attempts: %s", task_id, task.retry_count, message
        )
        await self.events.emit(
            EventType.TASK_FAILED,
            task_id=task_id,
            worker_id=worker_id,
            error=message,
            retry_count=task.retry_count,
        )
        return entry

    def _record_metrics(self, worker_id: str | None, outcome: str) -> None:
        if worker_id is None:
            return
        worker = self.directory.get_by_id(worker_id)
        if worker is None:
            return
        for name, value in self.registry.updates_for(outcome, worker).items():
            self.directory.record_metric(worker_id, name, value)

    # --- Cancellation ---

    async def cancel(self, task_id: str) -> Task:
        """Withdraw an unfinished task from the store, then from the queue.

        The task leaves the store before the first await, so an outcome
        reported while the queue is being cleaned up finds nothing to finish.
        """
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.is_terminal:
            raise InvalidStateError(f"Task {task_id} is already finished (status: {task.status})")

        dispatch_id = task.dispatch_id
        self.ledger.release(task)
        self.store.remove(task_id)
        await self._remove_upstream(task_id, dispatch_id)

        logger.info("Cancelled task %s", task_id)
        await self.events.emit(
            EventType.TASK_CANCELLED, task_id=task_id, worker_id=task.assigned_to
        )
        return task

    async def release_assignment(self, task_id: str, reason: str = "") -> Task:
        """Drop a task's current worker binding and leave it pending."""
        task = self.store.require(task_id)
        if task.status not in (TaskStatus.PENDING, TaskStatus.ASSIGNED):
            raise InvalidStateError(
                f"Task {task_id} cannot be unassigned (status: {task.status})"
            )

        previous = task.assigned_to
        dispatch_id = task.dispatch_id
        self.ledger.release(task)
        task.assigned_to = None
        task.assigned_at = None
        task.dispatch_id = None
        task.status = TaskStatus.PENDING
        self.store.persist()
        await self._remove_upstream(task_id, dispatch_id)

        logger.info("Released task %s from %s", task_id, previous)
        await self.events.emit(
            EventType.TASK_CANCELLED, task_id=task_id, worker_id=previous, reason=reason
        )
        return task

    async def delete(self, task_id: str) -> Task:
        """Remove a task regardless of status."""
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if self.store.get_active_task(task_id) is not None:
            dispatch_id = task.dispatch_id
            self.ledger.release(task)
            self.store.remove(task_id)
            await self._remove_upstream(task_id, dispatch_id)

        logger.info("Deleted task %s", task_id)
        await self.events.emit(EventType.TASK_DELETED, task_id=task_id)
        return task

    async def _remove_upstream(self, task_id: str, dispatch_id: str | None) -> int:
        """Best-effort removal of the queued job for one dispatch."""
        if self.transport is None or dispatch_id is None or not self.transport.is_ready():
            return 0
        try:
            return await asyncio.wait_for(
                self._remove_jobs(task_id, dispatch_id), timeout=self.config.transport_timeout
            )
        except (TransportError, TimeoutError, OSError) as e:
            logger.warning("Could not remove queued job for task %s: %s", task_id, e)
            return 0

    async def _remove_jobs(self, task_id: str, dispatch_id: str) -> int:
        removed = 0
        for job in await self.transport.list_jobs(_REMOVABLE_JOB_STATES):
            if job.data.get("task_id") != task_id:
                continue
            if job.data.get("dispatch_id", dispatch_id) != dispatch_id:
                continue
            if await job.remove():
                removed += 1
        return removed

    # --- Transport handlers ---

    async def handle_job_active(self, job: Job) -> None:
        logger.debug("Job %s started for task %s", job.id, job.data.get("task_id"))

    async def handle_job_completed(self, job: Job, result: Any) -> None:
        if not isinstance(result, TaskResult):
            return
        await self.on_completion(
            job.data["task_id"], result, dispatch_id=job.data.get("dispatch_id")
        )

    async def handle_job_failed(self, job: Job, error: BaseException) -> None:
        task_id = job.data.get("task_id")
        if task_id is None:
            logger.error("Job %s failed without a task id: %s", job.id, error)
            return
        await self.on_failure(task_id, error, dispatch_id=job.data.get("dispatch_id"))

    async def handle_job_stalled(self, job: Job) -> None:
        logger.warning(
            "Job %s for task %s stalled and was requeued", job.id, job.data.get("task_id")
        )

    async def handle_queue_error(self, error: BaseException) -> None:
        logger.error("Queue error: %s", error)
        await self.events.emit(EventType.QUEUE_ERROR, error=str(error))
