from __future__ import annotations

import logging

from ..metrics.registry import (
    DB_OPERATION_LATENCY_SECONDS,
    DB_OPERATION_TOTAL,
    DB_RETRY_TOTAL,
)

logger = logging.getLogger(__name__)


def observe_db_operation(op: str, status: str, latency_s: float) -> None:
    """
    Record one repository call. Metric failures are logged, never raised,
    so they cannot mask the storage outcome.
    """
    try:
        DB_OPERATION_TOTAL.labels(op=op, status=status).inc()
        DB_OPERATION_LATENCY_SECONDS.labels(op=op).observe(latency_s)
    except Exception:
        logger.debug("failed to record db metrics for %s", op, exc_info=True)


def observe_db_retry(op: str) -> None:
    try:
        DB_RETRY_TOTAL.labels(op=op).inc()
    except Exception:
        logger.debug("failed to record retry metric for %s", op, exc_info=True)
