from __future__ import annotations

import threading
import time

import pytest

from clusterops.config import ManagerConfig, QueueConfig
from clusterops.process.events import PubSub
from clusterops.process.manager import StagedManager
from clusterops.process.pipeline import Pipeline, Stage
from clusterops.process.queue import Queue
from clusterops.process.step import FunctionStep
from clusterops.storage.models import Operation, OperationState, OperationType

from _harness import default_threads, run_threads


class SlowStep:
    """Holds the first caller for `hold` seconds and counts concurrent runs."""

    name = "slow"

    def __init__(self, hold: float) -> None:
        self.hold = hold
        self.lock = threading.Lock()
        self.runs = 0
        self.active = 0
        self.max_active = 0

    def run(self, operation, log):
        with self.lock:
            self.runs += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            first = self.runs == 1
        try:
            if first:
                time.sleep(self.hold)
            return operation.evolve(description="provisioned"), 0
        finally:
            with self.lock:
                self.active -= 1


def _manager(repository, step) -> StagedManager:
    return StagedManager(
        repository,
        PubSub(),
        Pipeline.of(Stage.of("create", step), Stage.of("register", FunctionStep("noop", lambda op, log: (op, 0)))),
        ManagerConfig(),
    )


@pytest.mark.concurrency
@pytest.mark.parametrize("backend", ["memory", "sql"])
def test_overlapping_dispatches_do_not_double_increment(request, backend: str) -> None:
    repository = request.getfixturevalue(f"{backend}_repository")
    op = Operation.new("instance-1", OperationType.PROVISION)
    repository.insert(op)
    step = SlowStep(hold=0.5)
    managers = [_manager(repository, step) for _ in range(2)]

    def _dispatch(*, worker_id: int) -> None:
        if worker_id == 1:
            time.sleep(0.1)
        managers[worker_id].execute(op.id)

    run_threads(threads=2, worker_fn=_dispatch)

    final = repository.get_by_id(op.id)
    assert final.state in (OperationState.IN_PROGRESS, OperationState.SUCCEEDED)
    # a clean run persists six times: started, each step, each stage, succeeded
    assert final.version <= 6
    if final.state == OperationState.SUCCEEDED:
        assert final.finished_stages == ("create", "register")


@pytest.mark.concurrency
def test_queue_never_hands_one_id_to_two_workers(memory_repository, wait_until) -> None:
    op = Operation.new("instance-1", OperationType.PROVISION)
    memory_repository.insert(op)
    step = SlowStep(hold=0.3)
    queue = Queue(_manager(memory_repository, step), QueueConfig(name="single-owner", workers=default_threads()))
    queue.run()
    try:
        run_threads(
            threads=default_threads(),
            worker_fn=lambda *, worker_id: [queue.add(op.id) for _ in range(20)],
        )
        wait_until(lambda: memory_repository.get_by_id(op.id).state == OperationState.SUCCEEDED)
        wait_until(lambda: not queue.is_processing(op.id) and queue.size() == 0)
    finally:
        queue.stop(timeout=5)

    assert step.max_active == 1
    assert memory_repository.get_by_id(op.id).version == 6
