"""Workload accounting.

A task adds ``base(priority) * min(2, duration / 1h)`` load (rounded up) to
the worker it is bound to. The ledger remembers the amount actually applied
after clamping so that release restores the worker's previous load.
"""

from __future__ import annotations

import logging
import math

from ..tasks.models import Priority, Task
from ..workers.directory import WorkerDirectory
from ..workers.models import MAX_LOAD, MIN_LOAD, Worker, WorkerStatus

logger = logging.getLogger(__name__)

WORKLOAD_BASE: dict[Priority, int] = {
    Priority.URGENT: 30,
    Priority.HIGH: 20,
    Priority.MEDIUM: 15,
    Priority.LOW: 10,
}

TRANSPORT_PRIORITY: dict[Priority, int] = {
    Priority.URGENT: 10,
    Priority.HIGH: 5,
    Priority.MEDIUM: 0,
    Priority.LOW: -5,
}

REFERENCE_DURATION_MS = 60 * 60 * 1000
MAX_DURATION_FACTOR = 2.0


def workload_delta(priority: Priority | str, estimated_duration: int) -> int:
    base = WORKLOAD_BASE.get(Priority(priority), WORKLOAD_BASE[Priority.MEDIUM])
    factor = min(MAX_DURATION_FACTOR, estimated_duration / REFERENCE_DURATION_MS)
    return math.ceil(base * factor)


def transport_priority(priority: Priority | str) -> int:
    try:
        return TRANSPORT_PRIORITY[Priority(priority)]
    except ValueError:
        return 0


def clamp_load(load: int) -> int:
    return max(MIN_LOAD, min(MAX_LOAD, load))


class WorkloadLedger:
    """Binds tasks to workers and releases them through the worker directory."""

    def __init__(self, directory: WorkerDirectory):
        self.directory = directory

    def bind(self, task: Task, worker: Worker) -> int:
        """Mark ``worker`` busy with ``task`` and raise its load. Returns the applied delta."""
        previous = worker.load
        new_load = clamp_load(previous + workload_delta(task.priority, task.estimated_duration))

        task.assigned_to = worker.id
        task.workload_delta = new_load - previous
        task.resources_held = True

        self.directory.update_status(worker.id, WorkerStatus.BUSY)
        self.directory.update_load(worker.id, new_load)
        self.directory.assign_project(worker.id, task.id)
        return task.workload_delta

    def release(self, task: Task) -> bool:
        """Undo bind(). Safe to call repeatedly; only the first call has an effect."""
        if not task.resources_held or task.assigned_to is None:
            return False
        task.resources_held = False

        worker = self.directory.get_by_id(task.assigned_to)
        if worker is None:
            logger.warning("Worker %s for task %s no longer exists", task.assigned_to, task.id)
            return True

        if worker.status == WorkerStatus.BUSY:
            self.directory.update_status(worker.id, WorkerStatus.AVAILABLE)
        self.directory.update_load(worker.id, clamp_load(worker.load - task.workload_delta))
        self.directory.remove_project(worker.id, task.id)
        return True

    def snapshot(self, task: Task) -> tuple[WorkerStatus, int] | None:
        """Status and load of the worker ``task`` holds, for a later restore()."""
        if not task.resources_held or task.assigned_to is None:
            return None
        worker = self.directory.get_by_id(task.assigned_to)
        if worker is None:
            return None
        return worker.status, worker.load

    def restore(self, task: Task, held: tuple[WorkerStatus, int] | None) -> None:
        """Put back a binding that release() undid, exactly as snapshot() saw it."""
        if held is None or task.resources_held or task.assigned_to is None:
            return
        status, load = held
        task.resources_held = True
        self.directory.update_status(task.assigned_to, status)
        self.directory.update_load(task.assigned_to, load)
        self.directory.assign_project(task.assigned_to, task.id)
