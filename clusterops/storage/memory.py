from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Iterable

from ..config import StorageConfig
from ..errors import AlreadyExistsError, ConflictError, NotFoundError
from .base import OperationRepository
from .models import (
    NOT_FINISHED_STATES,
    Operation,
    OperationFilter,
    OperationPage,
    OperationState,
    OperationType,
    utc_now,
)


class InMemoryOperationRepository(OperationRepository):
    """
    Process-local repository with the same compare-and-swap semantics as the
    SQL one. Values are deep-copied on the way in and out, so callers never
    share payload dicts with the store.
    """

    def __init__(
        self,
        config: StorageConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or StorageConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._rows: dict[str, Operation] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()

    def _sorted(self, ops: Iterable[Operation], newest_first: bool = False) -> list[Operation]:
        result = sorted(ops, key=lambda op: (op.created_at, self._order[op.id]), reverse=newest_first)
        return [copy.deepcopy(op) for op in result]

    def insert(self, operation: Operation) -> None:
        with self._lock:
            if operation.id in self._rows:
                raise AlreadyExistsError(f"operation with id {operation.id} already exists")
            self._rows[operation.id] = copy.deepcopy(operation)
            self._order[operation.id] = next(self._seq)

    def update(self, operation: Operation) -> Operation:
        with self._lock:
            stored = self._rows.get(operation.id)
            if stored is None:
                raise NotFoundError(f"operation with id {operation.id} does not exist")
            if stored.version != operation.version:
                raise ConflictError(
                    f"operation update conflict, operation ID: {operation.id} "
                    f"(expected version {operation.version}, stored {stored.version})"
                )
            updated = operation.evolve(
                type=stored.type,
                instance_id=stored.instance_id,
                created_at=stored.created_at,
                version=stored.version + 1,
                updated_at=self._clock(),
            )
            self._rows[operation.id] = copy.deepcopy(updated)
            return updated

    def get_by_id(self, operation_id: str) -> Operation:
        with self._lock:
            op = self._rows.get(operation_id)
            if op is None:
                raise NotFoundError(f"operation with id {operation_id} does not exist")
            return copy.deepcopy(op)

    def _newest(self, instance_id: str, predicate: Callable[[Operation], bool]) -> Operation:
        with self._lock:
            ops = [
                op for op in self._rows.values()
                if op.instance_id == instance_id and predicate(op)
            ]
            if not ops:
                raise NotFoundError(f"operation for instance {instance_id} does not exist")
            return self._sorted(ops, newest_first=True)[0]

    def get_by_instance_id(self, instance_id: str) -> Operation:
        return self._newest(instance_id, lambda op: True)

    def get_last_operation(self, instance_id: str) -> Operation:
        return self._newest(instance_id, lambda op: op.state != OperationState.PENDING)

    def _select(self, predicate: Callable[[Operation], bool]) -> list[Operation]:
        with self._lock:
            return self._sorted(op for op in self._rows.values() if predicate(op))

    def list_by_instance_id(self, instance_id: str) -> list[Operation]:
        return self._select(lambda op: op.instance_id == instance_id)

    def get_by_ids(self, operation_ids: Iterable[str]) -> list[Operation]:
        wanted = set(operation_ids)
        return self._select(lambda op: op.id in wanted)

    def list_by_filter(self, filter: OperationFilter) -> OperationPage:
        if filter.page_size > self.config.max_page_size:
            raise ValueError(
                f"page_size {filter.page_size} exceeds the maximum of {self.config.max_page_size}"
            )
        matching = self._select(filter.matches)
        items = matching[filter.offset:filter.offset + filter.page_size]
        return OperationPage(items=items, count=len(items), total_count=len(matching))

    def list_by_campaign_id(self, campaign_id: str) -> list[Operation]:
        return self._select(lambda op: op.campaign_id == campaign_id)

    def list_not_finished_by_type(self, op_type: OperationType) -> list[Operation]:
        op_type = OperationType(op_type)
        return self._select(lambda op: op.type == op_type and op.state in NOT_FINISHED_STATES)

    def list_in_time_range(self, start: datetime, end: datetime) -> list[Operation]:
        return self._select(lambda op: start <= op.created_at <= end)
