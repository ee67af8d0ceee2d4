from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from ..config import ManagerConfig
from ..errors import (
    ConflictError,
    StepError,
    TerminalStepError,
    TransientStepError,
    TransientStorageError,
)
from ..storage.base import OperationRepository
from ..storage.models import Operation, OperationState, utc_now
from .events import (
    Event,
    EventSink,
    OperationFailed,
    OperationStepProcessed,
    OperationSucceeded,
)
from .metrics import observe_operation_finished, observe_step
from .pipeline import Pipeline, Stage
from .step import Step, step_logger

logger = logging.getLogger(__name__)


class StagedManager:
    """
    Walks an operation through its pipeline.

    execute() loads the operation, resumes at the first stage missing from
    finished_stages and runs steps in declared order, persisting after every
    step and after every finished stage. It returns the number of seconds
    after which the operation must be dispatched again, or 0 when there is
    nothing more to do for this ID (terminal, or abandoned after a conflict).

    A ConflictError while persisting means another execution is ahead of
    this one; the invocation is abandoned without touching the operation.
    """

    def __init__(
        self,
        repository: OperationRepository,
        event_sink: EventSink,
        pipeline: Pipeline,
        config: ManagerConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        log: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.event_sink = event_sink
        self.pipeline = pipeline
        self.config = config or ManagerConfig()
        self._clock = clock
        self._log = log or logger

    def execute(self, operation_id: str) -> float:
        """
        Raises:
            NotFoundError: If no operation has this ID
        """
        try:
            operation = self.repository.get_by_id(operation_id)
            if operation.state.is_terminal:
                self._log.info(
                    "operation %s is already %s, nothing to do", operation.id, operation.state.value
                )
                return 0.0
            return self._run(operation)
        except ConflictError as exc:
            self._log.warning(
                "abandoning execution of operation %s, it was modified concurrently: %s",
                operation_id,
                exc,
            )
            return 0.0
        except TransientStorageError as exc:
            self._log.error(
                "storage unavailable while processing operation %s, retrying in %.3fs: %s",
                operation_id,
                self.config.retry_backoff,
                exc,
            )
            return self.config.retry_backoff

    def _expired(self, operation: Operation) -> bool:
        return operation.is_expired(self.config.operation_timeout, self._clock())

    def _run(self, operation: Operation) -> float:
        if self._expired(operation):
            return self._fail(operation, "operation exceeded its time limit")

        if operation.state == OperationState.PENDING:
            operation = self.repository.update(operation.evolve(state=OperationState.IN_PROGRESS))
            self._log.info("operation %s (%s) started", operation.id, operation.type.value)

        for stage in self.pipeline.unfinished_stages(operation):
            self._log.info("operation %s: processing stage %s", operation.id, stage.name)
            for stage_step in stage.steps:
                if not stage_step.applies(operation):
                    self._log.debug(
                        "operation %s: skipping step %s, condition not met",
                        operation.id,
                        stage_step.name,
                    )
                    continue
                if self._expired(operation):
                    return self._fail(operation, "operation exceeded its time limit")

                updated, delay, error = self._run_step(operation, stage, stage_step.step)

                if isinstance(error, TransientStepError):
                    return self._retry(updated, stage_step.name, error)
                if error is not None:
                    return self._fail(updated, f"step {stage_step.name} failed: {error}")
                if delay > 0:
                    self.repository.update(updated.evolve(state=OperationState.RETRYING))
                    self._log.debug(
                        "operation %s: step %s asked to be run again in %.3fs",
                        operation.id,
                        stage_step.name,
                        delay,
                    )
                    return delay

                operation = self.repository.update(updated.evolve(state=OperationState.IN_PROGRESS))

            operation = self.repository.update(operation.with_finished_stage(stage.name))
            self._log.info("operation %s: stage %s finished", operation.id, stage.name)

        return self._succeed(operation)

    def _run_step(
        self, operation: Operation, stage: Stage, step: Step
    ) -> tuple[Operation, float, Optional[StepError]]:
        log = step_logger(self._log, operation, stage.name, step.name)
        started = time.monotonic()
        result, delay, error = operation, 0.0, None
        try:
            result, delay = step.run(operation, log)
            if not isinstance(result, Operation):
                raise TerminalStepError(f"step returned {type(result).__name__} instead of an operation")
            if isinstance(delay, bool) or not isinstance(delay, (int, float)):
                raise TerminalStepError(f"step returned a non-numeric delay ({delay!r})")
            if delay < 0:
                raise TerminalStepError(f"step returned a negative delay ({delay})")
        except StepError as exc:
            result, delay, error = operation, 0.0, exc
        except Exception as exc:
            log.exception("unexpected error")
            error = TerminalStepError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            result, delay = operation, 0.0
        duration = time.monotonic() - started

        # the engine owns identity, version, stages and state; steps own the rest
        result = result.evolve(
            id=operation.id,
            instance_id=operation.instance_id,
            type=operation.type,
            version=operation.version,
            finished_stages=operation.finished_stages,
            created_at=operation.created_at,
            state=operation.state,
        )

        if isinstance(error, TransientStepError):
            outcome = "transient"
        elif error is not None:
            outcome = "terminal"
        elif delay > 0:
            outcome = "delay"
        else:
            outcome = "done"
        observe_step(stage.name, step.name, outcome, duration)
        log.debug("finished with result %s in %.3fs", outcome, duration)

        self._publish(
            OperationStepProcessed(
                operation=result,
                stage=stage.name,
                step=step.name,
                duration=duration,
                error=str(error) if error is not None else None,
            )
        )
        return result, delay, error

    def _retry(self, operation: Operation, step_name: str, error: TransientStepError) -> float:
        if self._expired(operation):
            return self._fail(
                operation, f"step {step_name} kept failing until the time limit: {error}"
            )
        retry_in = error.retry_after or self.config.retry_backoff
        self.repository.update(
            operation.evolve(state=OperationState.RETRYING, description=f"{step_name}: {error}")
        )
        self._log.warning(
            "operation %s: step %s failed transiently, retrying in %.3fs: %s",
            operation.id,
            step_name,
            retry_in,
            error,
        )
        return retry_in

    def _fail(self, operation: Operation, reason: str) -> float:
        failed = self.repository.update(
            operation.evolve(state=OperationState.FAILED, description=reason)
        )
        self._log.error("operation %s failed: %s", failed.id, reason)
        observe_operation_finished(failed.type.value, failed.state.value)
        self._publish(OperationFailed(operation=failed, error=reason))
        return 0.0

    def _succeed(self, operation: Operation) -> float:
        succeeded = self.repository.update(operation.evolve(state=OperationState.SUCCEEDED))
        self._log.info("operation %s succeeded", succeeded.id)
        observe_operation_finished(succeeded.type.value, succeeded.state.value)
        self._publish(OperationSucceeded(operation=succeeded))
        return 0.0

    def _publish(self, event: Event) -> None:
        try:
            self.event_sink.publish(event)
        except Exception:
            self._log.exception(
                "event sink failed for %s of operation %s", type(event).__name__, event.operation.id
            )
