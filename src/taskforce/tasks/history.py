"""Bounded history of terminal tasks."""

from __future__ import annotations

from collections import deque

from .models import Task


class TaskHistory:
    """Append-only ring of terminal task snapshots.

    When an append pushes the ring past ``capacity`` the oldest entries are
    dropped until ``capacity * trim_ratio`` remain, so overflow trimming
    happens in bursts instead of on every append.
    """

    def __init__(
        self,
        capacity: int = 1000,
        trim_ratio: float = 0.8,
        description_limit: int = 500,
    ):
        if capacity < 1:
            raise ValueError("history capacity must be positive")
        self.capacity = capacity
        self.trim_to = max(1, int(capacity * trim_ratio))
        self.description_limit = description_limit
        self._entries: deque[Task] = deque()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def _detach(self, task: Task) -> Task:
        entry = task.model_copy(deep=True)
        if len(entry.description) > self.description_limit:
            entry.description = entry.description[: self.description_limit]
        return entry

    def append(self, task: Task) -> Task:
        """Store a detached copy of ``task`` with its description truncated."""
        entry = self._detach(task)
        self._entries.append(entry)
        if len(self._entries) > self.capacity:
            while len(self._entries) > self.trim_to:
                self._entries.popleft()
        return entry

    def replace(self, task: Task) -> Task:
        """Overwrite the latest entry for ``task.id`` in place, or append if there is none."""
        for index in range(len(self._entries) - 1, -1, -1):
            if self._entries[index].id == task.id:
                entry = self._detach(task)
                self._entries[index] = entry
                return entry
        return self.append(task)

    def recent(self, limit: int = 100) -> list[Task]:
        """Most recent ``limit`` entries, oldest first."""
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    def find(self, task_id: str) -> Task | None:
        for entry in reversed(self._entries):
            if entry.id == task_id:
                return entry
        return None

    def clear(self) -> None:
        self._entries.clear()
