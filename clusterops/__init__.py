from .config import EventStreamConfig, ManagerConfig, QueueConfig, StorageConfig
from .engine import Engine
from .errors import (
    AlreadyExistsError,
    ClusterOpsError,
    ConflictError,
    NotFoundError,
    PipelineError,
    QueueError,
    StepError,
    StorageError,
    TerminalStepError,
    TransientStepError,
    TransientStorageError,
)

__all__ = [
    "AlreadyExistsError",
    "ClusterOpsError",
    "ConflictError",
    "Engine",
    "EventStreamConfig",
    "ManagerConfig",
    "NotFoundError",
    "PipelineError",
    "QueueError",
    "QueueConfig",
    "StepError",
    "StorageConfig",
    "StorageError",
    "TerminalStepError",
    "TransientStepError",
    "TransientStorageError",
]
