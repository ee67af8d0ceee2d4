from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Optional, Protocol

from ..config import QueueConfig
from ..errors import QueueError
from .metrics import observe_dispatch, set_queue_depth

logger = logging.getLogger(__name__)


class Executor(Protocol):
    def execute(self, operation_id: str) -> float:
        """Process the operation; return the delay before the next dispatch, 0 when done."""
        ...


class Queue:
    """
    Bounded worker pool over a set of pending operation IDs.

    Each worker loops: pop an ID, hand it to the executor, then drop it or
    re-add it after the delay the executor reported. Delayed re-adds are
    scheduled with threading.Timer, so the worker is free immediately.

    Guarantees:
    - an ID is never in the hands of two workers at once; adding an ID that
      is being processed marks it dirty and it is queued again once the
      current dispatch returns
    - an ID waits in the pending set at most once (duplicate adds collapse)

    Order of dequeue is FIFO-ish; nothing is promised across IDs.

    Usage:
        queue = Queue(manager, QueueConfig(name="provisioning", workers=5))
        queue.run()
        queue.add(operation.id)
        ...
        queue.stop()
    """

    def __init__(self, executor: Executor, config: QueueConfig) -> None:
        self.config = config
        self._executor = executor
        self._cond = threading.Condition()
        self._pending: deque[str] = deque()
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._timers: set[threading.Timer] = set()
        self._threads: list[threading.Thread] = []
        self._stopping = threading.Event()
        self._speed_factor = 1.0

    @property
    def name(self) -> str:
        return self.config.name

    def speed_up(self, factor: float) -> None:
        """Divide every delay by factor. Meant for tests."""
        if factor <= 0:
            raise ValueError("speed-up factor must be > 0")
        self._speed_factor = float(factor)

    def size(self) -> int:
        with self._cond:
            return len(self._pending)

    def is_processing(self, operation_id: str) -> bool:
        with self._cond:
            return operation_id in self._processing

    def add(self, operation_id: str) -> None:
        """
        Queue the ID for immediate processing.

        Raises:
            QueueError: If the queue has been stopped
        """
        if self._stopping.is_set():
            raise QueueError(f"queue {self.name} is stopped")
        self._enqueue(operation_id)

    def add_after(self, operation_id: str, delay: float) -> None:
        """
        Queue the ID once delay seconds (divided by the speed-up factor) have passed.

        Raises:
            QueueError: If the queue has been stopped
        """
        if self._stopping.is_set():
            raise QueueError(f"queue {self.name} is stopped")
        self._schedule(operation_id, delay)

    def _schedule(self, operation_id: str, delay: float) -> None:
        delay = delay / self._speed_factor
        if delay <= 0:
            self._enqueue(operation_id)
            return

        timer = threading.Timer(delay, self._fire, args=(operation_id,))
        timer.daemon = True
        with self._cond:
            self._timers.add(timer)
        timer.start()

    def _fire(self, operation_id: str) -> None:
        with self._cond:
            self._timers.discard(threading.current_thread())
        if not self._stopping.is_set():
            self._enqueue(operation_id)

    def _enqueue(self, operation_id: str) -> None:
        with self._cond:
            if operation_id in self._processing:
                self._dirty.add(operation_id)
                return
            if operation_id in self._queued:
                return
            self._queued.add(operation_id)
            self._pending.append(operation_id)
            set_queue_depth(self.name, len(self._pending))
            self._cond.notify()

    def _next(self) -> Optional[str]:
        with self._cond:
            while not self._pending and not self._stopping.is_set():
                self._cond.wait()
            if self._stopping.is_set():
                return None
            operation_id = self._pending.popleft()
            self._queued.discard(operation_id)
            self._processing.add(operation_id)
            set_queue_depth(self.name, len(self._pending))
            return operation_id

    def _done(self, operation_id: str, delayed: bool = False) -> None:
        with self._cond:
            self._processing.discard(operation_id)
            if operation_id in self._dirty:
                self._dirty.discard(operation_id)
                # a delayed dispatch is requeued only by its timer
                if delayed:
                    return
                self._queued.add(operation_id)
                self._pending.append(operation_id)
                set_queue_depth(self.name, len(self._pending))
                self._cond.notify()

    def _worker(self) -> None:
        while True:
            operation_id = self._next()
            if operation_id is None:
                return

            delay = 0.0
            result = "done"
            try:
                delay = self._executor.execute(operation_id)
            except Exception:
                delay = 0.0
                result = "error"
                logger.exception("queue %s: processing of operation %s failed", self.name, operation_id)

            delayed = delay > 0 and not self._stopping.is_set()
            self._done(operation_id, delayed)
            if delayed:
                result = "requeued"
                self._schedule(operation_id, delay)
            observe_dispatch(self.name, result)

    def run(self) -> None:
        """
        Start the worker threads.

        Raises:
            QueueError: If the queue is already running or has been stopped
        """
        if self._stopping.is_set():
            raise QueueError(f"queue {self.name} is stopped")
        if self._threads:
            raise QueueError(f"queue {self.name} is already running")
        for i in range(self.config.workers):
            thread = threading.Thread(
                target=self._worker,
                name=f"{self.name}-worker-{i}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("queue %s started with %d worker(s)", self.name, self.config.workers)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Signal shutdown.

        Pending IDs and scheduled re-adds are dropped; dispatches already in
        progress run to completion. The persisted operations keep their state
        and can be re-queued after a restart.
        """
        self._stopping.set()
        with self._cond:
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()
        if wait:
            for thread in self._threads:
                thread.join(timeout)
        logger.info("queue %s stopped", self.name)
