from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Sequence


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationType(str, Enum):
    PROVISION = "provision"
    DEPROVISION = "deprovision"
    UPDATE = "update"
    UPGRADE_KYMA = "upgradeKyma"
    UPGRADE_CLUSTER = "upgradeCluster"


class OperationState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in progress"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.SUCCEEDED, OperationState.FAILED)


NOT_FINISHED_STATES = (
    OperationState.PENDING,
    OperationState.IN_PROGRESS,
    OperationState.RETRYING,
)


@dataclass(frozen=True)
class Operation:
    """
    One lifecycle action against one managed instance.

    Instances are values: steps and the manager derive new operations with
    evolve() and nothing is visible to other workers until a repository
    update succeeds. `version` is the optimistic-concurrency token and is
    owned by the repository.
    """

    id: str
    instance_id: str
    type: OperationType
    state: OperationState = OperationState.PENDING
    version: int = 0
    finished_stages: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    campaign_id: Optional[str] = None
    # owned by step implementations, never interpreted by the engine
    payload: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def new(
        cls,
        instance_id: str,
        op_type: OperationType,
        *,
        operation_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> "Operation":
        created = now or utc_now()
        return cls(
            id=operation_id or str(uuid.uuid4()),
            instance_id=instance_id,
            type=OperationType(op_type),
            created_at=created,
            updated_at=created,
            campaign_id=campaign_id,
            payload=dict(payload or {}),
            description=description,
        )

    def evolve(self, **changes: Any) -> "Operation":
        return replace(self, **changes)

    def is_stage_finished(self, stage_name: str) -> bool:
        return stage_name in self.finished_stages

    def with_finished_stage(self, stage_name: str) -> "Operation":
        if stage_name in self.finished_stages:
            return self
        return replace(self, finished_stages=self.finished_stages + (stage_name,))

    def deadline(self, max_lifetime: float) -> datetime:
        return self.created_at + timedelta(seconds=max_lifetime)

    def is_expired(self, max_lifetime: float, now: datetime) -> bool:
        return now >= self.deadline(max_lifetime)


@dataclass
class OperationFilter:
    page: int = 1
    page_size: int = 100
    states: Sequence[OperationState] = ()
    types: Sequence[OperationType] = ()
    instance_ids: Sequence[str] = ()
    campaign_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.states = tuple(OperationState(s) for s in self.states)
        self.types = tuple(OperationType(t) for t in self.types)
        self.instance_ids = tuple(self.instance_ids)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def matches(self, op: Operation) -> bool:
        """In-memory equivalent of the SQL WHERE clause."""
        if self.states and op.state not in self.states:
            return False
        if self.types and op.type not in self.types:
            return False
        if self.instance_ids and op.instance_id not in self.instance_ids:
            return False
        if self.campaign_id is not None and op.campaign_id != self.campaign_id:
            return False
        return True


@dataclass(frozen=True)
class OperationPage:
    items: list[Operation]
    # number of items on this page / number of matching records
    count: int
    total_count: int
