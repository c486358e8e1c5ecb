"""Operations across many tasks or workers at once."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..config import EngineConfig
from ..errors import (
    InvalidStateError,
    NoCandidateError,
    NotFoundError,
    TaskforceError,
    UnavailableError,
)
from ..tasks.models import Priority, TaskStatus
from ..tasks.store import TaskStore
from ..workers.directory import CANDIDATE_LOAD_CEILING, WorkerDirectory
from ..workers.models import Worker
from .assignment import AssignmentEngine
from .recovery import RecoveryCoordinator

logger = logging.getLogger(__name__)

MAX_ALTERNATIVES = 3
# Load above which a worker's queue is expected to delay new work
WAIT_LOAD_THRESHOLD = 50
WAIT_PER_LOAD_POINT_MS = 60_000

PRIORITY_RANK: dict[Priority, int] = {
    Priority.URGENT: 3,
    Priority.HIGH: 2,
    Priority.MEDIUM: 1,
    Priority.LOW: 0,
}


@dataclass
class Assignment:
    task_id: str
    worker_id: str


@dataclass
class Redistribution:
    task_id: str
    from_worker: str
    to_worker: str


@dataclass
class Recommendation:
    best_worker: Worker | None
    alternatives: list[Worker] = field(default_factory=list)
    estimated_wait_time: int = 0  # ms


class FleetOperations:
    def __init__(
        self,
        store: TaskStore,
        directory: WorkerDirectory,
        assignment: AssignmentEngine,
        recovery: RecoveryCoordinator,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.directory = directory
        self.assignment = assignment
        self.recovery = recovery
        self.config = config or EngineConfig()

    async def assign_tasks_to_team(
        self,
        task_ids: list[str],
        skills: list[str],
        team_size: int,
        department: str | None = None,
    ) -> list[Assignment]:
        """Spread ``task_ids`` over a team picked for ``skills``.

        Each task goes to the team member with the most matching skills,
        ties broken by lowest load. Tasks that cannot be placed are skipped.
        """
        team = self.directory.find_team(skills, team_size, department=department)
        if not team:
            raise NoCandidateError("No suitable team members found")

        assignments: list[Assignment] = []
        for task_id in task_ids:
            task = self.store.get_active_task(task_id)
            if task is None:
                logger.warning("Task %s not found, skipping assignment", task_id)
                continue

            members = [self.directory.get_by_id(m.id) for m in team]
            members = [m for m in members if m is not None and m.is_assignable]
            if not members:
                logger.warning("No team member available for task %s", task_id)
                continue

            best = max(members, key=lambda w: (w.skill_overlap(task.skills_required), -w.load))
            try:
                await self.assignment.assign_task(task_id, best.id)
            except (InvalidStateError, UnavailableError, NotFoundError) as e:
                logger.warning("Could not assign task %s to %s: %s", task_id, best.id, e)
                continue
            assignments.append(Assignment(task_id=task_id, worker_id=best.id))

        return assignments

    async def redistribute_workload(
        self,
        overloaded_threshold: int | None = None,
        underloaded_threshold: int | None = None,
    ) -> list[Redistribution]:
        """Move one pending task off each overloaded worker to an underloaded one."""
        high = overloaded_threshold
        if high is None:
            high = self.config.overloaded_threshold
        low = underloaded_threshold
        if low is None:
            low = self.config.underloaded_threshold

        workers = self.directory.list_all()
        overloaded = [w for w in workers if w.load > high]
        underloaded = [w for w in workers if w.load < low]
        if not overloaded or not underloaded:
            logger.info("No workload redistribution needed")
            return []

        moves: list[Redistribution] = []
        for worker in overloaded:
            pending = [
                t
                for t in self.store.get_tasks_by_worker(worker.id)
                if t.status == TaskStatus.PENDING
            ]
            for task in pending:
                candidate = self.directory.find_best_match(task.skills_required, task.priority)
                if candidate is None or candidate.id == worker.id or candidate.load >= low:
                    continue

                await self.recovery.release_assignment(task.id, reason="redistributed")
                try:
                    await self.assignment.assign_task(task.id, candidate.id)
                except TaskforceError as e:
                    logger.warning("Task %s left unassigned after redistribution: %s", task.id, e)
                    break
                logger.info(
                    "Redistributed task %s from %s to %s", task.id, worker.id, candidate.id
                )
                moves.append(Redistribution(task.id, worker.id, candidate.id))
                break

        return moves

    def get_recommendations(
        self, required_skills: list[str], priority: Priority = Priority.MEDIUM
    ) -> Recommendation:
        best = self.directory.find_best_match(required_skills, priority)

        alternatives: list[Worker] = []
        if required_skills:
            alternatives = [
                w
                for w in self.directory.list_by_skill(required_skills[0])
                if best is None or w.id != best.id
            ][:MAX_ALTERNATIVES]

        wait = 0
        if best is not None:
            wait = max(0, (best.load - WAIT_LOAD_THRESHOLD) * WAIT_PER_LOAD_POINT_MS)
        return Recommendation(best_worker=best, alternatives=alternatives, estimated_wait_time=wait)

    async def assign_pending_tasks(self) -> list[Assignment]:
        """Auto-assign every pending task whose dependencies are done, most urgent first."""
        ready = sorted(
            self.store.ready_tasks(),
            key=lambda t: (-PRIORITY_RANK.get(t.priority, 0), t.created_at),
        )

        assignments: list[Assignment] = []
        for task in ready:
            try:
                assigned = await self.assignment.assign_task(task.id)
            except (NoCandidateError, UnavailableError, InvalidStateError) as e:
                logger.debug("Task %s not assigned: %s", task.id, e)
                continue
            assignments.append(Assignment(task_id=task.id, worker_id=assigned.assigned_to))

        if assignments:
            logger.info("Auto-assigned %d of %d ready tasks", len(assignments), len(ready))
        return assignments

    def get_team_capacity(self, department: str | None = None) -> dict[str, float]:
        workers = [
            w
            for w in self.directory.list_all()
            if department is None or w.department == department
        ]
        available = [w for w in workers if w.is_assignable and w.load < CANDIDATE_LOAD_CEILING]
        return {
            "total": len(workers),
            "available": len(available),
            "busy": len(workers) - len(available),
            "average_load": round(sum(w.load for w in workers) / len(workers), 1)
            if workers
            else 0.0,
        }
