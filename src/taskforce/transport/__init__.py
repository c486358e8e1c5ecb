"""Durable job transports."""

from .base import Job, JobProcessor, JobState, QueueTransport
from .sqlite import SqliteQueueTransport

__all__ = ["Job", "JobProcessor", "JobState", "QueueTransport", "SqliteQueueTransport"]
