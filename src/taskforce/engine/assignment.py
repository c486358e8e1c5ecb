"""Task assignment and dispatch.

Assignment binds a pending task to a worker and hands a dispatch record to
the durable transport. If the transport cannot take the job the engine
switches to in-process execution for the rest of its life, unless a
recovery probe finds the transport healthy again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from ..config import EngineConfig
from ..errors import (
    InvalidStateError,
    NoCandidateError,
    NotFoundError,
    TransportError,
    UnavailableError,
)
from ..events import EventManager, EventType
from ..tasks.models import Task, TaskStatus, utcnow
from ..tasks.store import TaskStore, generate_id
from ..transport.base import QueueTransport
from ..workers.directory import WorkerDirectory
from ..workers.models import Worker
from .workload import WorkloadLedger, transport_priority

if TYPE_CHECKING:
    from .runner import ExecutionRunner

logger = logging.getLogger(__name__)


class DispatchMode(StrEnum):
    DURABLE = "durable"
    FALLBACK = "fallback"


@dataclass
class DispatchRecord:
    """What a transport job carries. ``dispatch_id`` identifies one assignment."""

    task_id: str
    worker_id: str
    dispatch_id: str

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> DispatchRecord:
        return cls(
            task_id=data["task_id"],
            worker_id=data["worker_id"],
            dispatch_id=data.get("dispatch_id", ""),
        )


class AssignmentEngine:
    def __init__(
        self,
        store: TaskStore,
        directory: WorkerDirectory,
        ledger: WorkloadLedger,
        events: EventManager,
        runner: ExecutionRunner,
        transport: QueueTransport | None = None,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.directory = directory
        self.ledger = ledger
        self.events = events
        self.runner = runner
        self.transport = transport
        self.config = config or EngineConfig()

        self.mode = DispatchMode.DURABLE if transport is not None else DispatchMode.FALLBACK
        self._failed_over_at: float | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    # --- Assignment ---

    async def assign_task(self, task_id: str, worker_id: str | None = None) -> Task:
        """Bind a pending task to ``worker_id`` (or the best match) and dispatch it.

        Raises:
            NotFoundError: unknown task or worker.
            InvalidStateError: the task is not pending.
            NoCandidateError: no worker_id given and nobody matches.
            UnavailableError: the chosen worker is not available.
        """
        task = self.store.require(task_id)
        if task.status != TaskStatus.PENDING:
            raise InvalidStateError(f"Task {task_id} is not pending (status: {task.status})")

        # A retried task still holds its previous worker. It is freed so it can
        # be picked again, and put back if nobody can take the task.
        held = self.ledger.snapshot(task)
        self.ledger.release(task)
        try:
            worker = self._select_worker(task, worker_id)
            if not worker.is_assignable:
                raise UnavailableError(
                    f"Worker {worker.id} is not available (status: {worker.status})"
                )
        except (NotFoundError, NoCandidateError, UnavailableError):
            self.ledger.restore(task, held)
            raise

        # Everything up to here runs without yielding, so two concurrent
        # assign calls for one task cannot both see it pending.
        self.ledger.bind(task, worker)
        task.status = TaskStatus.ASSIGNED
        task.assigned_at = utcnow()
        task.dispatch_id = generate_id("dispatch")
        self.store.persist()

        record = DispatchRecord(task_id=task.id, worker_id=worker.id, dispatch_id=task.dispatch_id)
        await self.dispatch(record, task)

        logger.info(
            "Assigned task %s to %s (load +%d, %s)",
            task.id,
            worker.id,
            task.workload_delta,
            self.mode,
        )
        await self.events.emit(
            EventType.TASK_ASSIGNED,
            task_id=task.id,
            worker_id=worker.id,
            dispatch_id=task.dispatch_id,
            mode=str(self.mode),
        )
        return task

    def _select_worker(self, task: Task, worker_id: str | None) -> Worker:
        if worker_id is not None:
            worker = self.directory.get_by_id(worker_id)
            if worker is None:
                raise NotFoundError(f"Worker {worker_id} not found")
            return worker

        worker = self.directory.find_best_match(task.skills_required, task.priority)
        if worker is None:
            raise NoCandidateError(f"No suitable worker found for task {task.id}")
        return worker

    # --- Dispatch ---

    async def dispatch(self, record: DispatchRecord, task: Task) -> None:
        self._probe_transport()

        if self.mode == DispatchMode.DURABLE:
            try:
                await asyncio.wait_for(
                    self.transport.enqueue(
                        self.config.job_name,
                        record.as_payload(),
                        priority=transport_priority(task.priority),
                    ),
                    timeout=self.config.transport_timeout,
                )
                return
            except (TransportError, TimeoutError, OSError) as e:
                self.fail_over(e)

        self.run_in_background(record)

    def fail_over(self, error: BaseException | str) -> None:
        """Switch to in-process execution."""
        if self.mode == DispatchMode.FALLBACK:
            return
        self.mode = DispatchMode.FALLBACK
        self._failed_over_at = time.monotonic()
        logger.warning("Queue transport unavailable, executing tasks in-process: %s", error)

    def _probe_transport(self) -> None:
        if self.mode == DispatchMode.DURABLE or self.transport is None:
            return
        interval = self.config.recovery_probe_interval
        if interval <= 0 or self._failed_over_at is None:
            return
        if time.monotonic() - self._failed_over_at < interval:
            return

        if self.transport.is_ready():
            self.mode = DispatchMode.DURABLE
            self._failed_over_at = None
            logger.info("Queue transport recovered, resuming durable dispatch")
        else:
            self._failed_over_at = time.monotonic()

    def run_in_background(self, record: DispatchRecord) -> asyncio.Task[None]:
        execution = asyncio.create_task(
            self.runner.run(record.task_id, record.worker_id, record.dispatch_id),
            name=f"task-{record.task_id}",
        )
        self._inflight.add(execution)
        execution.add_done_callback(self._on_background_done)
        return execution

    def _on_background_done(self, execution: asyncio.Task[None]) -> None:
        self._inflight.discard(execution)
        if execution.cancelled():
            return
        error = execution.exception()
        if error is not None:
            logger.error("In-process execution %s failed: %s", execution.get_name(), error)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def drain(self, cancel: bool = False) -> None:
        """Wait for (or cancel) in-process executions."""
        if not self._inflight:
            return
        if cancel:
            for execution in self._inflight:
                execution.cancel()
        await asyncio.gather(*self._inflight, return_exceptions=True)
