from .events import (
    EventSink,
    OperationFailed,
    OperationStepProcessed,
    OperationSucceeded,
    PubSub,
    RedisStreamEventSink,
)
from .manager import StagedManager
from .pipeline import Pipeline, Stage, StageStep
from .queue import Queue
from .step import FunctionStep, Step

__all__ = [
    "EventSink",
    "FunctionStep",
    "OperationFailed",
    "OperationStepProcessed",
    "OperationSucceeded",
    "Pipeline",
    "PubSub",
    "Queue",
    "RedisStreamEventSink",
    "Stage",
    "StageStep",
    "StagedManager",
    "Step",
]
