"""Shared fixtures: a worker pool, an in-memory queue transport and engines."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

import pytest
import pytest_asyncio

from taskforce.config import EngineConfig
from taskforce.engine.core import TaskEngine
from taskforce.errors import TransportError
from taskforce.transport.base import ACTIVE, COMPLETED, FAILED, Job, JobState
from taskforce.workers.directory import InMemoryWorkerDirectory
from taskforce.workers.models import Worker


class FakeTransport:
    """In-memory QueueTransport. Jobs only run when a test calls run_next()."""

    def __init__(self) -> None:
        self.ready = False
        self.connect_error: Exception | None = None
        self.fail_enqueue = False
        self.hang_enqueue = False
        self.fail_list = False
        self.list_delay = 0.0
        self.paused = False
        self.closed = False
        self.jobs: list[Job] = []
        self.handlers: dict[str, list[Any]] = defaultdict(list)
        self.processors: dict[str, Any] = {}

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.ready = True

    def is_ready(self) -> bool:
        return self.ready

    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        delay: float = 0.0,
    ) -> Job:
        if self.hang_enqueue:
            await asyncio.sleep(3600)
        if self.fail_enqueue or not self.ready:
            raise TransportError("queue is down")
        job = Job(
            id=f"job-{len(self.jobs) + 1}",
            name=job_name,
            data=dict(payload),
            priority=priority,
            remover=self._remove,
        )
        self.jobs.append(job)
        return job

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event].append(handler)

    def process(self, job_name: str, processor: Any) -> None:
        self.processors[job_name] = processor

    async def list_jobs(self, states: Iterable[JobState | str]) -> list[Job]:
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.fail_list:
            raise TransportError("queue is down")
        wanted = {JobState(s) for s in states}
        return [j for j in self.jobs if j.state in wanted]

    async def job_counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self.jobs:
            counts[job.state.value] += 1
        return counts

    async def pause(self) -> None:
        self.paused = True

    async def resume(self) -> None:
        self.paused = False

    async def close(self) -> None:
        self.closed = True
        self.ready = False

    async def _remove(self, job_id: str) -> bool:
        before = len(self.jobs)
        self.jobs = [j for j in self.jobs if j.id != job_id]
        return len(self.jobs) < before

    @property
    def waiting(self) -> list[Job]:
        return [j for j in self.jobs if j.state == JobState.WAITING]

    async def run_next(self) -> Any:
        """Process the highest priority waiting job like a queue worker would."""
        job = sorted(self.waiting, key=lambda j: -j.priority)[0]
        job.state = JobState.ACTIVE
        await self._emit(ACTIVE, job)
        try:
            result = await self.processors[job.name](job)
        except Exception as e:
            job.state = JobState.FAILED
            await self._emit(FAILED, job, e)
            return None
        job.state = JobState.COMPLETED
        await self._emit(COMPLETED, job, result)
        return result

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in self.handlers[event]:
            await handler(*args)


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        db_path=str(tmp_path / "taskforce.db"),
        transport_timeout=0.2,
        auto_retry=False,
        persist_snapshots=False,
        recovery_probe_interval=0,
    )


@pytest.fixture
def directory():
    return InMemoryWorkerDirectory(
        [
            Worker(
                id="alice",
                name="Alice",
                role="Senior Developer",
                department="engineering",
                skills=["python", "api"],
                load=10,
            ),
            Worker(
                id="bob",
                name="Bob",
                role="QA Engineer",
                department="engineering",
                skills=["python", "testing"],
                load=30,
            ),
            Worker(
                id="carol",
                name="Carol",
                role="Project Manager",
                department="product",
                skills=["planning"],
                load=50,
            ),
        ]
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_spec():
    def make(**overrides: Any) -> dict[str, Any]:
        spec = {
            "title": "Build endpoint",
            "description": "Add the /health endpoint",
            "skills_required": ["python"],
            "priority": "medium",
            "estimated_duration": 1_800_000,
        }
        spec.update(overrides)
        return spec

    return make


@pytest_asyncio.fixture
async def engine(directory, config, transport):
    """Engine dispatching through the fake durable transport."""
    engine = TaskEngine(directory, config=config, transport=transport)
    await engine.start()
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def local_engine(directory, config):
    """Engine without a transport; everything runs in-process."""
    engine = TaskEngine(directory, config=config)
    await engine.start()
    yield engine
    await engine.stop()
