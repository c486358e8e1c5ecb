"""Exception taxonomy for the scheduling engine."""

from __future__ import annotations


class TaskforceError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(TaskforceError):
    """A task spec or request violates a data-model constraint."""

    def __init__(self, message: str, fields: list[str] | None = None):
        self.fields = fields or []
        super().__init__(message)


class NotFoundError(TaskforceError):
    """Unknown task or worker id."""


class InvalidStateError(TaskforceError):
    """Operation attempted from a status that forbids it."""


class UnavailableError(TaskforceError):
    """Worker is not in an assignable status."""


class NoCandidateError(TaskforceError):
    """No worker satisfies the request."""


class TaskTimeoutError(TaskforceError, TimeoutError):
    """Execution exceeded twice the estimated duration."""


class TransportError(TaskforceError):
    """Durable queue transport is unreachable or rejected a call."""
