from __future__ import annotations

import logging

from ..metrics.registry import (
    OPERATIONS_FINISHED_TOTAL,
    QUEUE_DEPTH,
    QUEUE_DISPATCH_TOTAL,
    STEP_DURATION_SECONDS,
    STEP_RESULT_TOTAL,
)

logger = logging.getLogger(__name__)


def observe_step(stage: str, step: str, result: str, duration_s: float) -> None:
    try:
        STEP_DURATION_SECONDS.labels(stage=stage, step=step).observe(duration_s)
        STEP_RESULT_TOTAL.labels(stage=stage, step=step, result=result).inc()
    except Exception:
        logger.debug("failed to record step metrics for %s/%s", stage, step, exc_info=True)


def observe_operation_finished(op_type: str, state: str) -> None:
    try:
        OPERATIONS_FINISHED_TOTAL.labels(type=op_type, state=state).inc()
    except Exception:
        logger.debug("failed to record operation metric", exc_info=True)


def observe_dispatch(queue: str, result: str) -> None:
    try:
        QUEUE_DISPATCH_TOTAL.labels(queue=queue, result=result).inc()
    except Exception:
        logger.debug("failed to record dispatch metric for %s", queue, exc_info=True)


def set_queue_depth(queue: str, depth: int) -> None:
    try:
        QUEUE_DEPTH.labels(queue=queue).set(depth)
    except Exception:
        logger.debug("failed to record queue depth for %s", queue, exc_info=True)
