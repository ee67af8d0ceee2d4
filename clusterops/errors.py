from __future__ import annotations

from typing import Optional


class ClusterOpsError(Exception):
    """Base exception for clusterops errors."""


class StorageError(ClusterOpsError):
    """Any failure reported by an operation repository."""


class NotFoundError(StorageError):
    """The requested operation does not exist."""


class AlreadyExistsError(StorageError):
    """An operation with the same ID is already stored."""


class ConflictError(StorageError):
    """The stored version no longer matches the caller's version."""


class TransientStorageError(StorageError):
    """Storage stayed unreachable for the whole retry budget."""


class StepError(ClusterOpsError):
    """Business failure signalled by a step."""


class TerminalStepError(StepError):
    """The operation cannot succeed; it is marked failed."""


class TransientStepError(StepError):
    """
    The step should be run again later.

    retry_after overrides the manager's configured backoff (seconds).
    """

    def __init__(self, message: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        if retry_after is not None and retry_after < 0:
            raise ValueError("retry_after must be >= 0")
        self.retry_after = retry_after


class PipelineError(ClusterOpsError):
    """Invalid stage/step pipeline definition."""


class QueueError(ClusterOpsError):
    """General queue-related issues."""
