"""Role-specific performance counters.

Each role maps to a small function that, given the worker and the outcome,
returns the metric values to record. Roles without an entry fall back to the
generic ``tasks_completed`` / ``tasks_failed`` counters.
"""

from __future__ import annotations

from collections.abc import Callable

from .models import Worker

MetricUpdate = Callable[[Worker], dict[str, float]]

COMPLETED = "completed"
FAILED = "failed"


def increment(metric: str, by: float = 1) -> MetricUpdate:
    def update(worker: Worker) -> dict[str, float]:
        return {metric: worker.performance_metrics.get(metric, 0) + by}

    return update


class MetricRegistry:
    """Lookup table of (outcome, role) -> metric update."""

    def __init__(self, default_completed: MetricUpdate, default_failed: MetricUpdate):
        self._defaults = {COMPLETED: default_completed, FAILED: default_failed}
        self._updates: dict[tuple[str, str], MetricUpdate] = {}

    def register(self, outcome: str, roles: tuple[str, ...], update: MetricUpdate) -> None:
        for role in roles:
            self._updates[(outcome, role.lower())] = update

    def on_completion(self, *roles: str) -> Callable[[MetricUpdate], MetricUpdate]:
        def decorator(update: MetricUpdate) -> MetricUpdate:
            self.register(COMPLETED, roles, update)
            return update

        return decorator

    def on_failure(self, *roles: str) -> Callable[[MetricUpdate], MetricUpdate]:
        def decorator(update: MetricUpdate) -> MetricUpdate:
            self.register(FAILED, roles, update)
            return update

        return decorator

    def updates_for(self, outcome: str, worker: Worker) -> dict[str, float]:
        update = self._updates.get((outcome, worker.role.lower()), self._defaults[outcome])
        return update(worker)


def build_default_registry() -> MetricRegistry:
    registry = MetricRegistry(
        default_completed=increment("tasks_completed"),
        default_failed=increment("tasks_failed"),
    )
    registry.register(COMPLETED, ("Project Manager",), increment("projects_completed"))
    registry.register(COMPLETED, ("Technical Lead",), increment("architecture_decisions"))
    registry.register(
        COMPLETED, ("Senior Developer", "Junior Developer"), increment("features_delivered")
    )
    registry.register(COMPLETED, ("QA Engineer", "Test Engineer"), increment("tests_executed"))
    registry.register(FAILED, ("Senior Developer", "Junior Developer"), increment("bug_rate"))
    return registry
