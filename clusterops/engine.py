from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Optional

from .config import ManagerConfig, QueueConfig
from .errors import QueueError
from .fleet.campaigns import CampaignView
from .fleet.reducer import CampaignStatus
from .process.events import EventSink, PubSub
from .process.manager import StagedManager
from .process.pipeline import Pipeline
from .process.queue import Queue
from .storage.base import OperationRepository
from .storage.models import Operation, OperationFilter, OperationPage, OperationType, utc_now

logger = logging.getLogger(__name__)


class Engine:
    """
    Wires repositories, managers and queues together.

    Each registered queue gets its own StagedManager built with the pipeline
    passed in, and owns a disjoint set of operation types.

    Usage:
        engine = Engine(SqlOperationRepository(db_engine))
        engine.register_queue("provisioning", [OperationType.PROVISION], pipeline, workers=5)
        engine.start()
        engine.submit(Operation.new("instance-1", OperationType.PROVISION))
        ...
        engine.stop()
    """

    def __init__(
        self,
        repository: OperationRepository,
        event_sink: EventSink | None = None,
        manager_config: ManagerConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.event_sink = event_sink if event_sink is not None else PubSub()
        self.manager_config = manager_config or ManagerConfig()
        self.campaigns = CampaignView(repository)
        self._clock = clock
        self._lock = threading.Lock()
        self._queues: dict[str, Queue] = {}
        self._owners: dict[OperationType, str] = {}
        self._running = False
        self._speed_factor = 1.0

    def register_queue(
        self,
        name: str,
        types: Iterable[OperationType],
        pipeline: Pipeline,
        workers: int = 5,
    ) -> Queue:
        """
        Raises:
            QueueError: If the name is taken or a type already belongs to another queue
        """
        op_types = [OperationType(t) for t in types]
        if not op_types:
            raise QueueError(f"queue {name} must own at least one operation type")
        with self._lock:
            if name in self._queues:
                raise QueueError(f"queue {name} is already registered")
            for op_type in op_types:
                if op_type in self._owners:
                    raise QueueError(
                        f"operation type {op_type.value} already belongs to queue {self._owners[op_type]}"
                    )
            manager = StagedManager(
                self.repository,
                self.event_sink,
                pipeline,
                self.manager_config,
                clock=self._clock,
            )
            queue = Queue(manager, QueueConfig(name=name, workers=workers))
            queue.speed_up(self._speed_factor)
            self._queues[name] = queue
            for op_type in op_types:
                self._owners[op_type] = name
            running = self._running
        if running:
            queue.run()
        return queue

    def queue(self, name: str) -> Queue:
        try:
            return self._queues[name]
        except KeyError:
            raise QueueError(f"unknown queue {name}") from None

    def queue_for(self, op_type: OperationType) -> Queue:
        name = self._owners.get(OperationType(op_type))
        if name is None:
            raise QueueError(f"no queue handles operations of type {OperationType(op_type).value}")
        return self._queues[name]

    def submit(self, operation: Operation) -> Operation:
        """Persist a new operation and hand it to the queue owning its type."""
        queue = self.queue_for(operation.type)
        self.repository.insert(operation)
        queue.add(operation.id)
        logger.info(
            "operation %s (%s) for instance %s submitted to queue %s",
            operation.id,
            operation.type.value,
            operation.instance_id,
            queue.name,
        )
        return operation

    def enqueue(self, queue_name: str, operation_id: str) -> None:
        self.queue(queue_name).add(operation_id)

    def enqueue_after(self, queue_name: str, operation_id: str, delay: float) -> None:
        self.queue(queue_name).add_after(operation_id, delay)

    def speed_up(self, factor: float) -> None:
        """Compress every queue delay by factor, including queues registered later. Meant for tests."""
        if factor <= 0:
            raise ValueError("speed-up factor must be > 0")
        with self._lock:
            self._speed_factor = float(factor)
            queues = list(self._queues.values())
        for queue in queues:
            queue.speed_up(factor)

    def start(self) -> None:
        with self._lock:
            self._running = True
            queues = list(self._queues.values())
        for queue in queues:
            queue.run()

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._running = False
            queues = list(self._queues.values())
        for queue in queues:
            queue.stop(wait=wait, timeout=timeout)

    def recover(self) -> int:
        """Re-enqueue every not-finished operation of the registered types; returns how many."""
        count = 0
        for op_type, name in list(self._owners.items()):
            queue = self._queues[name]
            for operation in self.repository.list_not_finished_by_type(op_type):
                queue.add(operation.id)
                count += 1
        if count:
            logger.info("re-enqueued %d unfinished operation(s)", count)
        return count

    def get_operation(self, operation_id: str) -> Operation:
        return self.repository.get_by_id(operation_id)

    def get_last_operation(self, instance_id: str) -> Operation:
        return self.repository.get_last_operation(instance_id)

    def list_operations(self, filter: OperationFilter) -> OperationPage:
        return self.repository.list_by_filter(filter)

    def campaign_status(self, campaign_id: str) -> CampaignStatus:
        return self.campaigns.status(campaign_id)

    def list_campaign_operations(self, campaign_id: str, filter: OperationFilter) -> OperationPage:
        return self.campaigns.list_operations(campaign_id, filter)
