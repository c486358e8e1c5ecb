"""Task data model, history and store."""

from .history import TaskHistory
from .models import (
    CommentType,
    Priority,
    Task,
    TaskComment,
    TaskCreate,
    TaskResult,
    TaskStatus,
    TaskUpdate,
)
from .store import TaskStore

__all__ = [
    "CommentType",
    "Priority",
    "Task",
    "TaskComment",
    "TaskCreate",
    "TaskHistory",
    "TaskResult",
    "TaskStatus",
    "TaskStore",
    "TaskUpdate",
]
