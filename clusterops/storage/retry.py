from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from ..errors import StorageError, TransientStorageError
from .metrics import observe_db_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
)


def is_transient(exc: BaseException) -> bool:
    """
    Connection drops, deadlocks, lock wait timeouts and pool exhaustion.

    Logical outcomes (StorageError subclasses such as ConflictError or
    NotFoundError) are never transient, whatever their cause.
    """
    if isinstance(exc, StorageError):
        return False
    return isinstance(exc, TRANSIENT_ERRORS)


def with_retry(
    fn: Callable[[], T],
    *,
    op: str,
    interval: float,
    timeout: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call fn until it succeeds, retrying only transient storage failures.

    - Transient failures are retried every `interval` seconds until `timeout`
      seconds have passed since the first attempt, then TransientStorageError
      is raised from the last failure.
    - Anything else, ConflictError and NotFoundError included, propagates on
      the first occurrence.
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if clock() + interval > deadline:
                raise TransientStorageError(
                    f"{op} failed after {attempt} attempt(s): {exc}"
                ) from exc
            logger.warning(
                "Transient storage failure during %s (attempt %d), retrying in %.3fs: %s",
                op,
                attempt,
                interval,
                exc,
            )
            observe_db_retry(op)
            sleep(interval)
