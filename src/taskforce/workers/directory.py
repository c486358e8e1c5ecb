"""Worker directory - lookup and bookkeeping for the worker pool.

The engine only talks to the directory through the WorkerDirectory protocol
and never mutates Worker objects itself. InMemoryWorkerDirectory is the
bundled implementation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from ..tasks.models import Priority
from .models import MAX_LOAD, MIN_LOAD, Worker, WorkerStatus

logger = logging.getLogger(__name__)

# How much skill match outweighs spare capacity, per task priority
PRIORITY_SKILL_WEIGHT: dict[Priority, float] = {
    Priority.URGENT: 0.9,
    Priority.HIGH: 0.8,
    Priority.MEDIUM: 0.6,
    Priority.LOW: 0.4,
}

# Workers at or above this load are not offered as candidates
CANDIDATE_LOAD_CEILING = 80


@runtime_checkable
class WorkerDirectory(Protocol):
    def get_by_id(self, worker_id: str) -> Worker | None: ...

    def find_best_match(
        self, skills: list[str], priority: Priority = Priority.MEDIUM
    ) -> Worker | None: ...

    def find_team(
        self, skills: list[str], size: int, department: str | None = None
    ) -> list[Worker]: ...

    def update_status(self, worker_id: str, status: WorkerStatus) -> bool: ...

    def update_load(self, worker_id: str, load: int) -> bool: ...

    def assign_project(self, worker_id: str, task_id: str) -> None: ...

    def remove_project(self, worker_id: str, task_id: str) -> None: ...

    def record_metric(self, worker_id: str, name: str, value: float) -> None: ...

    def list_by_skill(self, skill: str) -> list[Worker]: ...

    def list_all(self) -> list[Worker]: ...


def match_score(worker: Worker, skills: list[str], priority: Priority) -> float:
    """Blend of skill coverage and spare capacity, weighted by priority."""
    skill_score = worker.skill_overlap(skills) / len(skills) if skills else 0.0
    availability_score = (MAX_LOAD - worker.load) / MAX_LOAD
    weight = PRIORITY_SKILL_WEIGHT.get(priority, PRIORITY_SKILL_WEIGHT[Priority.MEDIUM])
    return skill_score * weight + availability_score * (1 - weight)


class InMemoryWorkerDirectory:
    """Dict-backed WorkerDirectory."""

    def __init__(self, workers: Iterable[Worker] = ()):
        self._workers: dict[str, Worker] = {w.id: w for w in workers}

    def add(self, worker: Worker) -> Worker:
        self._workers[worker.id] = worker
        return worker

    def get_by_id(self, worker_id: str) -> Worker | None:
        return self._workers.get(worker_id)

    def list_all(self) -> list[Worker]:
        return list(self._workers.values())

    def list_by_skill(self, skill: str) -> list[Worker]:
        return [w for w in self._workers.values() if w.has_skill(skill)]

    def candidates(
        self,
        skills: list[str],
        department: str | None = None,
        exclude_ids: Iterable[str] = (),
    ) -> list[Worker]:
        """Assignable workers under the load ceiling that cover at least one skill."""
        excluded = set(exclude_ids)
        return [
            w
            for w in self._workers.values()
            if w.is_assignable
            and w.load < CANDIDATE_LOAD_CEILING
            and w.id not in excluded
            and (department is None or w.department == department)
            and (not skills or w.skill_overlap(skills) > 0)
        ]

    def find_best_match(
        self, skills: list[str], priority: Priority = Priority.MEDIUM
    ) -> Worker | None:
        ranked = sorted(
            self.candidates(skills),
            key=lambda w: match_score(w, skills, priority),
            reverse=True,
        )
        return ranked[0] if ranked else None

    def find_team(
        self, skills: list[str], size: int, department: str | None = None
    ) -> list[Worker]:
        ranked = sorted(
            self.candidates(skills, department=department),
            key=lambda w: match_score(w, skills, Priority.MEDIUM),
            reverse=True,
        )
        return ranked[: max(0, size)]

    def update_status(self, worker_id: str, status: WorkerStatus) -> bool:
        worker = self._workers.get(worker_id)
        if worker is None:
            return False
        previous = worker.status
        worker.status = WorkerStatus(status)
        logger.debug("Worker %s status %s -> %s", worker_id, previous, worker.status)
        return True

    def update_load(self, worker_id: str, load: int) -> bool:
        worker = self._workers.get(worker_id)
        if worker is None or not MIN_LOAD <= load <= MAX_LOAD:
            return False
        worker.load = load
        return True

    def assign_project(self, worker_id: str, task_id: str) -> None:
        worker = self._workers.get(worker_id)
        if worker is not None and task_id not in worker.current_projects:
            worker.current_projects.append(task_id)

    def remove_project(self, worker_id: str, task_id: str) -> None:
        worker = self._workers.get(worker_id)
        if worker is not None and task_id in worker.current_projects:
            worker.current_projects.remove(task_id)

    def record_metric(self, worker_id: str, name: str, value: float) -> None:
        worker = self._workers.get(worker_id)
        if worker is not None:
            worker.performance_metrics[name] = value
