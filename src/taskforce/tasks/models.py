"""Task Pydantic models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 10_000
MAX_SKILLS = 20
MAX_SKILL_LENGTH = 50
MAX_DURATION_MS = 24 * 60 * 60 * 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RESOLVED = "resolved"


class CommentType(StrEnum):
    GENERAL = "general"
    RESOLUTION = "resolution"
    REOPEN_REASON = "reopen_reason"


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value


def _normalize_skills(skills: list[str]) -> list[str]:
    """Strip, reject empty/oversized entries and drop duplicates (order kept)."""
    seen: list[str] = []
    for skill in skills:
        skill = skill.strip()
        if not skill:
            raise ValueError("skill names must not be blank")
        if len(skill) > MAX_SKILL_LENGTH:
            raise ValueError(f"skill '{skill[:20]}...' exceeds {MAX_SKILL_LENGTH} characters")
        if skill not in seen:
            seen.append(skill)
    return seen


class TaskComment(BaseModel):
    id: str
    text: str
    comment_type: CommentType = CommentType.GENERAL
    author_id: str = "system"
    created_at: datetime = Field(default_factory=utcnow)


class TaskResult(BaseModel):
    success: bool
    output: str = ""
    error: str | None = None
    artifacts: list[str] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)


class TaskCreate(BaseModel):
    """Caller-supplied task spec, validated before a task is stored."""

    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str = Field(min_length=1, max_length=MAX_DESCRIPTION_LENGTH)
    skills_required: list[str] = Field(default_factory=list, max_length=MAX_SKILLS)
    priority: Priority = Priority.MEDIUM
    estimated_duration: int = Field(gt=0, le=MAX_DURATION_MS)
    max_retries: int | None = Field(default=None, ge=0)
    dependencies: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", "description")
    @classmethod
    def check_text(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("skills_required")
    @classmethod
    def check_skills(cls, value: list[str]) -> list[str]:
        return _normalize_skills(value)


class TaskUpdate(BaseModel):
    """Fields a caller may change after creation. Anything else is ignored."""

    title: str | None = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str | None = Field(
        default=None, min_length=1, max_length=MAX_DESCRIPTION_LENGTH
    )
    priority: Priority | None = None
    skills_required: list[str] | None = Field(default=None, max_length=MAX_SKILLS)
    estimated_duration: int | None = Field(default=None, gt=0, le=MAX_DURATION_MS)
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("title", "description")
    @classmethod
    def check_text(cls, value: str | None) -> str | None:
        return None if value is None else _require_text(value)

    @field_validator("skills_required")
    @classmethod
    def check_skills(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _normalize_skills(value)


class Task(BaseModel):
    id: str
    title: str
    description: str
    skills_required: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    estimated_duration: int
    max_retries: int = 3
    dependencies: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    resolved_at: datetime | None = None
    reopened_at: datetime | None = None
    assigned_to: str | None = None
    retry_count: int = 0
    result: TaskResult | None = None
    error: str | None = None
    comments: list[TaskComment] = Field(default_factory=list)
    actual_duration: int | None = None

    # Bookkeeping for the current assignment
    workload_delta: int = 0
    resources_held: bool = False
    dispatch_id: str | None = None

    @model_validator(mode="after")
    def check_dependencies(self) -> Task:
        if self.id in self.dependencies:
            raise ValueError(f"task {self.id} cannot depend on itself")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.RESOLVED)
