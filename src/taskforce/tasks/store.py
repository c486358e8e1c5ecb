"""Task store - authoritative in-memory task state.

Owns task identity and status transitions. Active tasks live in a dict keyed
by id; terminal tasks are projected into a bounded TaskHistory. Every
mutation schedules a best-effort snapshot on the persistence sink.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from ..config import EngineConfig
from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..events import EventManager, EventType
from .history import TaskHistory
from .models import CommentType, Task, TaskComment, TaskCreate, TaskStatus, TaskUpdate, utcnow

if TYPE_CHECKING:
    from ..storage.snapshot import PersistenceSink

logger = logging.getLogger(__name__)

# Fields update_task may touch; everything else is owned by the lifecycle
UPDATABLE_FIELDS = (
    "title",
    "description",
    "priority",
    "skills_required",
    "estimated_duration",
    "tags",
    "metadata",
)

_DONE_STATUSES = (TaskStatus.COMPLETED, TaskStatus.RESOLVED)


def generate_id(prefix: str = "task") -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def _validation_error(exc: PydanticValidationError, what: str) -> ValidationError:
    fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or what}: {err['msg']}" for err in exc.errors()
    )
    return ValidationError(f"Invalid {what}: {details}", fields=fields)


class TaskStore:
    """In-memory map of active tasks plus a size-bounded history."""

    def __init__(
        self,
        events: EventManager,
        sink: PersistenceSink | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        self.events = events
        self.sink = sink
        self.history = TaskHistory(
            capacity=self.config.max_history,
            trim_ratio=self.config.history_trim_ratio,
            description_limit=self.config.history_description_limit,
        )
        self._tasks: dict[str, Task] = {}
        self._pending_saves: set[asyncio.Task[None]] = set()

    # --- Creation ---

    async def create_task(self, spec: TaskCreate | dict[str, Any]) -> str:
        """Validate a task spec, store it as pending and return its id."""
        if not isinstance(spec, TaskCreate):
            try:
                spec = TaskCreate.model_validate(spec)
            except PydanticValidationError as e:
                raise _validation_error(e, "task spec") from e

        data = spec.model_dump()
        if data["max_retries"] is None:
            data["max_retries"] = self.config.default_max_retries

        task = Task(id=generate_id(), status=TaskStatus.PENDING, retry_count=0, **data)
        self._tasks[task.id] = task

        logger.info("Created task %s: %s", task.id, task.title)
        self.persist()
        await self.events.emit(EventType.TASK_CREATED, task_id=task.id, task=task)
        return task.id

    async def add_task(self, task: Task | dict[str, Any]) -> str:
        """Upsert an externally constructed task.

        Tasks without an id go through create_task so they get validated and
        a fresh id. Tasks with an id replace any stored task with that id.
        """
        if isinstance(task, dict):
            if not task.get("id"):
                spec = {k: v for k, v in task.items() if k in TaskCreate.model_fields}
                return await self.create_task(spec)
            try:
                task = Task.model_validate(task)
            except PydanticValidationError as e:
                raise _validation_error(e, "task") from e
        elif not task.id:
            return await self.create_task(
                task.model_dump(include=set(TaskCreate.model_fields))
            )

        self._tasks[task.id] = task
        logger.info("Imported task %s (%s)", task.id, task.status)
        self.persist()
        return task.id

    async def update_task(self, task_id: str, fields: TaskUpdate | dict[str, Any]) -> Task:
        """Apply a partial update restricted to UPDATABLE_FIELDS."""
        task = self.require(task_id)
        if isinstance(fields, dict):
            fields = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
            try:
                fields = TaskUpdate.model_validate(fields)
            except PydanticValidationError as e:
                raise _validation_error(e, "task update") from e

        changes = fields.model_dump(exclude_none=True)
        for name, value in changes.items():
            setattr(task, name, value)

        if changes:
            logger.info("Updated task %s: %s", task_id, ", ".join(sorted(changes)))
            self.persist()
        return task

    # --- Reads ---

    def get_task(self, task_id: str) -> Task | None:
        """Active task, or the latest history entry for a task that has left the store."""
        return self._tasks.get(task_id) or self.history.find(task_id)

    def get_active_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        """Active task or NotFoundError."""
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def get_all_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get_tasks_by_status(self, status: TaskStatus | str) -> list[Task]:
        return [t for t in self._tasks.values() if t.status == status]

    def get_tasks_by_worker(self, worker_id: str) -> list[Task]:
        return [t for t in self._tasks.values() if t.assigned_to == worker_id]

    def get_history(self, limit: int = 100) -> list[Task]:
        return self.history.recent(limit)

    def get_task_stats(self) -> dict[str, int]:
        tasks = self.get_all_tasks()
        history = list(self.history)
        return {
            "pending": sum(1 for t in tasks if t.status == TaskStatus.PENDING),
            "assigned": sum(1 for t in tasks if t.status == TaskStatus.ASSIGNED),
            "in_progress": sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
            "completed": sum(1 for t in history if t.status == TaskStatus.COMPLETED),
            "failed": sum(1 for t in history if t.status == TaskStatus.FAILED),
        }

    # --- Dependencies ---

    def dependencies_met(self, task: Task) -> bool:
        for dep_id in task.dependencies:
            dep = self.get_task(dep_id)
            if dep is None or dep.status not in _DONE_STATUSES:
                return False
        return True

    def ready_tasks(self) -> list[Task]:
        """Pending tasks whose dependencies are all done."""
        return [
            t
            for t in self._tasks.values()
            if t.status == TaskStatus.PENDING and self.dependencies_met(t)
        ]

    # --- Lifecycle ---

    async def set_status(self, task_id: str, status: TaskStatus) -> Task | None:
        """Move an active task to ``status`` and stamp the matching timestamp."""
        task = self._tasks.get(task_id)
        if task is None:
            return None

        task.status = status
        now = utcnow()
        if status == TaskStatus.ASSIGNED:
            task.assigned_at = now
        elif status == TaskStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now

        await self.events.emit(EventType.TASK_STATUS_UPDATED, task_id=task_id, status=status)
        return task

    def move_to_history(self, task: Task) -> Task:
        """Retire a terminal task from the active map into history."""
        entry = self.history.append(task)
        self._tasks.pop(task.id, None)
        self.persist()
        return entry

    def remove(self, task_id: str) -> Task | None:
        task = self._tasks.pop(task_id, None)
        if task is not None:
            self.persist()
        return task

    async def resolve_task(
        self, task_id: str, comment: str | None = None, author_id: str = "system"
    ) -> Task:
        """Mark a completed task resolved.

        A task already in history has its completed entry replaced by the
        resolved one, so it is listed once.
        """
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.status != TaskStatus.COMPLETED:
            raise InvalidStateError(
                f"Task {task_id} must be completed before it can be resolved "
                f"(status: {task.status})"
            )

        resolved = task.model_copy(deep=True)
        resolved.status = TaskStatus.RESOLVED
        resolved.resolved_at = utcnow()
        if comment:
            resolved.comments.append(
                TaskComment(
                    id=generate_id("comment"),
                    text=comment,
                    comment_type=CommentType.RESOLUTION,
                    author_id=author_id,
                )
            )

        if self._tasks.pop(task_id, None) is not None:
            entry = self.history.append(resolved)
        else:
            entry = self.history.replace(resolved)
        self.persist()

        logger.info("Resolved task %s", task_id)
        await self.events.emit(EventType.TASK_RESOLVED, task_id=task_id, comment=comment)
        return entry

    async def reopen_task(
        self, task_id: str, reason: str | None, author_id: str = "system"
    ) -> Task:
        """Return a completed or resolved task to pending with an audit comment."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reopen a task", fields=["reason"])

        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.status not in _DONE_STATUSES:
            raise InvalidStateError(
                f"Only completed or resolved tasks can be reopened (status: {task.status})"
            )

        reopened = task.model_copy(deep=True)
        reopened.status = TaskStatus.PENDING
        reopened.retry_count += 1
        reopened.reopened_at = utcnow()
        reopened.assigned_to = None
        reopened.assigned_at = None
        reopened.started_at = None
        reopened.completed_at = None
        reopened.resolved_at = None
        reopened.result = None
        reopened.error = None
        reopened.workload_delta = 0
        reopened.resources_held = False
        reopened.dispatch_id = None
        reopened.comments.append(
            TaskComment(
                id=generate_id("comment"),
                text=reason.strip(),
                comment_type=CommentType.REOPEN_REASON,
                author_id=author_id,
            )
        )
        self._tasks[task_id] = reopened
        self.persist()

        logger.info("Reopened task %s (retry %d)", task_id, reopened.retry_count)
        await self.events.emit(
            EventType.TASK_REOPENED,
            task_id=task_id,
            reason=reason,
            retry_count=reopened.retry_count,
        )
        return reopened

    # --- Persistence ---

    def restore(self, tasks: list[Task]) -> int:
        """Load previously persisted tasks without emitting events."""
        for task in tasks:
            self._tasks[task.id] = task
        return len(tasks)

    def persist(self) -> None:
        """Schedule a snapshot write. Never raises, never blocks."""
        if self.sink is None or not self.config.persist_snapshots:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        snapshot = [t.model_copy(deep=True) for t in self._tasks.values()]
        save = loop.create_task(self._save(snapshot), name="task-snapshot")
        self._pending_saves.add(save)
        save.add_done_callback(self._pending_saves.discard)

    async def flush(self) -> None:
        """Wait for in-flight snapshot writes."""
        if self._pending_saves:
            await asyncio.gather(*self._pending_saves, return_exceptions=True)

    async def _save(self, snapshot: list[Task]) -> None:
        try:
            await self.sink.save_snapshot(snapshot)
        except Exception as e:
            logger.error("Failed to save task snapshot: %s", e)
