"""Worker records, directory and performance metrics."""

from .directory import InMemoryWorkerDirectory, WorkerDirectory
from .metrics import MetricRegistry, build_default_registry
from .models import ASSIGNABLE_STATUSES, Worker, WorkerStatus

__all__ = [
    "ASSIGNABLE_STATUSES",
    "InMemoryWorkerDirectory",
    "MetricRegistry",
    "Worker",
    "WorkerDirectory",
    "WorkerStatus",
    "build_default_registry",
]
