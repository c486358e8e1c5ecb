"""Durable queue transport contract."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

# Lifecycle events a transport reports to registered handlers:
#   ready()              connection established
#   error(exc)           transport-level failure
#   waiting(job_id)      job queued
#   active(job)          job picked up by a processor
#   completed(job, res)  processor returned
#   failed(job, exc)     processor raised
#   stalled(job)         job lost its processor and was requeued
READY = "ready"
ERROR = "error"
WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
STALLED = "stalled"

LIFECYCLE_EVENTS = (READY, ERROR, WAITING, ACTIVE, COMPLETED, FAILED, STALLED)


class JobState(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.WAITING
    priority: int = 0
    attempts_made: int = 0
    failed_reason: str | None = None
    remover: Callable[[str], Awaitable[bool]] | None = field(default=None, repr=False)

    async def remove(self) -> bool:
        """Remove the job from its queue. Returns False if nothing was removed."""
        if self.remover is None:
            return False
        return await self.remover(self.id)


JobProcessor = Callable[[Job], Awaitable[Any]]


@runtime_checkable
class QueueTransport(Protocol):
    """At-least-once job broker.

    Priorities are plain integers; higher values are dequeued first.
    """

    async def connect(self) -> None: ...

    def is_ready(self) -> bool: ...

    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        delay: float = 0.0,
    ) -> Job: ...

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...

    def process(self, job_name: str, processor: JobProcessor) -> None: ...

    async def list_jobs(self, states: Iterable[JobState | str]) -> list[Job]: ...

    async def job_counts(self) -> dict[str, int]: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def close(self) -> None: ...
