"""Execution of a single dispatched task.

The same ``execute`` is used by the durable transport's job processor and by
the in-process fallback, so a task behaves identically on both paths.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from ..errors import NotFoundError, TaskforceError, TaskTimeoutError
from ..events import EventManager, EventType
from ..tasks.models import Task, TaskResult, TaskStatus, utcnow
from ..tasks.store import TaskStore
from ..workers.directory import WorkerDirectory
from ..workers.models import Worker

if TYPE_CHECKING:
    from .recovery import RecoveryCoordinator

logger = logging.getLogger(__name__)

TaskExecutor = Callable[[Task, Worker], Awaitable[TaskResult]]

# Execution may take this many times the estimate before it is abandoned
TIMEOUT_FACTOR = 2


async def default_executor(task: Task, worker: Worker) -> TaskResult:
    """Placeholder work: succeeds immediately."""
    return TaskResult(
        success=True,
        output=f'Task "{task.title}" completed by {worker.name or worker.id}',
    )


class ExecutionRunner:
    def __init__(
        self,
        store: TaskStore,
        directory: WorkerDirectory,
        events: EventManager,
        recovery: RecoveryCoordinator,
        executor: TaskExecutor | None = None,
    ):
        self.store = store
        self.directory = directory
        self.events = events
        self.recovery = recovery
        self.executor = executor or default_executor

    async def execute(self, task_id: str, worker_id: str, dispatch_id: str) -> TaskResult | None:
        """Run one dispatch of ``task_id``.

        Returns None without doing anything when the dispatch is stale (the
        task was reassigned, cancelled back to pending or already finished).
        Raises NotFoundError if the task does not exist at all, and
        TaskTimeoutError if the executor overruns.
        """
        task = self.store.get_active_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")

        if task.dispatch_id != dispatch_id or task.status not in (
            TaskStatus.ASSIGNED,
            TaskStatus.IN_PROGRESS,
        ):
            logger.info("Ignoring stale dispatch %s for task %s", dispatch_id, task_id)
            return None

        worker = self.directory.get_by_id(worker_id)
        if worker is None:
            raise NotFoundError(f"Worker {worker_id} not found")

        await self.store.set_status(task_id, TaskStatus.IN_PROGRESS)
        await self.events.emit(
            EventType.TASK_STARTED, task_id=task_id, worker_id=worker_id, dispatch_id=dispatch_id
        )

        timeout = TIMEOUT_FACTOR * task.estimated_duration / 1000
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self.executor(task, worker), timeout=timeout)
        except TimeoutError:
            raise TaskTimeoutError(
                f"Task {task_id} timed out after {TIMEOUT_FACTOR * task.estimated_duration}ms"
            ) from None
        finally:
            task.actual_duration = int((time.monotonic() - started) * 1000)

        if not result.success:
            raise TaskforceError(result.error or f"Task {task_id} reported failure")

        task.completed_at = utcnow()
        task.result = result
        return result

    async def run(self, task_id: str, worker_id: str, dispatch_id: str) -> None:
        """In-process path: execute and report the outcome to recovery."""
        try:
            result = await self.execute(task_id, worker_id, dispatch_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.store.get_active_task(task_id) is None:
                logger.warning("Task %s was removed before it could run: %s", task_id, e)
                return
            await self.recovery.on_failure(task_id, e, dispatch_id=dispatch_id)
            return

        if result is not None:
            await self.recovery.on_completion(task_id, result, dispatch_id=dispatch_id)
