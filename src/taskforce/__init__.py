"""Taskforce: task scheduling and lifecycle engine.

Assigns tasks to a pool of skilled workers, tracks their workload, executes
tasks through a durable SQLite job queue (or in-process when the queue is
unavailable) and handles retries, cancellation and review.

Usage:
    # Python API
    from taskforce import EngineConfig, InMemoryWorkerDirectory, TaskEngine, Worker

    directory = InMemoryWorkerDirectory([Worker(id="w1", skills=["python"])])
    async with TaskEngine.from_config(directory, EngineConfig.load()) as engine:
        task_id = await engine.create_task({...})
        await engine.assign_task(task_id)

    # CLI
    $ taskforce tasks --status pending
    $ taskforce queue
"""

try:
    from importlib.metadata import version as _get_version

    __version__ = _get_version("taskforce")
except Exception:
    __version__ = "0.0.0-dev"


# Lazy imports for faster CLI startup
def __getattr__(name: str):
    if name == "TaskEngine":
        from .engine.core import TaskEngine

        return TaskEngine
    if name == "EngineConfig":
        from .config import EngineConfig

        return EngineConfig
    if name == "InMemoryWorkerDirectory":
        from .workers.directory import InMemoryWorkerDirectory

        return InMemoryWorkerDirectory
    if name == "Worker":
        from .workers.models import Worker

        return Worker
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    "TaskEngine",
    "EngineConfig",
    "InMemoryWorkerDirectory",
    "Worker",
]
