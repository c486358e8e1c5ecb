"""Assignment, execution and recovery of tasks."""

from .assignment import AssignmentEngine, DispatchMode, DispatchRecord
from .core import TaskEngine
from .fleet import Assignment, FleetOperations, Recommendation, Redistribution
from .recovery import RecoveryCoordinator
from .runner import ExecutionRunner, TaskExecutor, default_executor
from .workload import WorkloadLedger, clamp_load, transport_priority, workload_delta

__all__ = [
    "Assignment",
    "AssignmentEngine",
    "DispatchMode",
    "DispatchRecord",
    "ExecutionRunner",
    "FleetOperations",
    "Recommendation",
    "RecoveryCoordinator",
    "Redistribution",
    "TaskEngine",
    "TaskExecutor",
    "WorkloadLedger",
    "clamp_load",
    "default_executor",
    "transport_priority",
    "workload_delta",
]
