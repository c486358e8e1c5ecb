"""Worker Pydantic models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

MIN_LOAD = 0
MAX_LOAD = 100


class WorkerStatus(StrEnum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


ASSIGNABLE_STATUSES = frozenset({WorkerStatus.AVAILABLE})


class Worker(BaseModel):
    id: str
    name: str = ""
    role: str = ""
    department: str = ""
    level: str = ""
    skills: list[str] = Field(default_factory=list)
    status: WorkerStatus = WorkerStatus.AVAILABLE
    load: int = Field(default=0, ge=MIN_LOAD, le=MAX_LOAD)
    current_projects: list[str] = Field(default_factory=list)
    performance_metrics: dict[str, float] = Field(default_factory=dict)

    @property
    def is_assignable(self) -> bool:
        return self.status in ASSIGNABLE_STATUSES

    def has_skill(self, skill: str) -> bool:
        wanted = skill.lower()
        return any(s.lower() == wanted for s in self.skills)

    def skill_overlap(self, skills: list[str]) -> int:
        """Number of ``skills`` this worker has (case-insensitive)."""
        own = {s.lower() for s in self.skills}
        return sum(1 for s in skills if s.lower() in own)
