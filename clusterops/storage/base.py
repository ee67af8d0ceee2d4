from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from .models import Operation, OperationFilter, OperationPage, OperationType


class OperationRepository(ABC):
    """
    Persistence contract for operation records.

    Writes:
    - insert() raises AlreadyExistsError when the ID is taken.
    - update() is a compare-and-swap on (id, version). On success it returns
      the stored value with version + 1 and a fresh updated_at. A stale
      version raises ConflictError and leaves the stored record untouched.

    Reads have no side effects. Single-record reads raise NotFoundError.

    Transient I/O failures are retried inside the repository up to its
    budget and then raised as TransientStorageError. ConflictError and
    NotFoundError are never retried.
    """

    @abstractmethod
    def insert(self, operation: Operation) -> None:
        ...

    @abstractmethod
    def update(self, operation: Operation) -> Operation:
        ...

    @abstractmethod
    def get_by_id(self, operation_id: str) -> Operation:
        ...

    @abstractmethod
    def get_by_instance_id(self, instance_id: str) -> Operation:
        """Most recently created operation of the instance."""
        ...

    @abstractmethod
    def get_last_operation(self, instance_id: str) -> Operation:
        """Most recently created operation of the instance that is not pending."""
        ...

    @abstractmethod
    def list_by_instance_id(self, instance_id: str) -> list[Operation]:
        """Whole history of the instance, oldest first."""
        ...

    @abstractmethod
    def get_by_ids(self, operation_ids: Iterable[str]) -> list[Operation]:
        """Missing IDs are omitted."""
        ...

    @abstractmethod
    def list_by_filter(self, filter: OperationFilter) -> OperationPage:
        ...

    @abstractmethod
    def list_by_campaign_id(self, campaign_id: str) -> list[Operation]:
        """Every record of the campaign, unpaged, oldest first."""
        ...

    @abstractmethod
    def list_not_finished_by_type(self, op_type: OperationType) -> list[Operation]:
        ...

    @abstractmethod
    def list_in_time_range(self, start: datetime, end: datetime) -> list[Operation]:
        """Operations created within [start, end]."""
        ...
