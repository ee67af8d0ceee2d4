from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, MutableMapping, Protocol, runtime_checkable

from ..storage.models import Operation


@runtime_checkable
class Step(Protocol):
    """
    Smallest unit of business logic the manager runs and retries.

    run() returns the updated operation and a delay in seconds:
    - delay == 0: the step is done, continue with the next one
    - delay > 0: run the same step again after the delay (polling)

    Failures are raised: TransientStepError to retry after a backoff,
    TerminalStepError (or any other exception) to fail the operation.
    Steps must be idempotent; a crash re-runs the current stage from its
    first step.
    """

    name: str

    def run(self, operation: Operation, log: logging.LoggerAdapter) -> tuple[Operation, float]:
        ...


@dataclass(frozen=True)
class FunctionStep:
    """Adapts a plain callable to the Step protocol."""

    name: str
    fn: Callable[[Operation, logging.LoggerAdapter], tuple[Operation, float]]

    def run(self, operation: Operation, log: logging.LoggerAdapter) -> tuple[Operation, float]:
        return self.fn(operation, log)


class StepLogAdapter(logging.LoggerAdapter):
    """Prefixes records with the operation, stage and step being processed."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        kwargs["extra"] = {**extra, **kwargs.get("extra", {})}
        return (
            f"[operation={extra.get('operation_id')} stage={extra.get('stage')} "
            f"step={extra.get('step')}] {msg}",
            kwargs,
        )


def step_logger(logger: logging.Logger, operation: Operation, stage: str, step: str) -> StepLogAdapter:
    return StepLogAdapter(
        logger,
        {
            "operation_id": operation.id,
            "instance_id": operation.instance_id,
            "stage": stage,
            "step": step,
        },
    )
