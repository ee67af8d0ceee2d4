from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

from ..storage.models import Operation, OperationState

# Any of these for the same instance means a newer attempt is running or has
# already recovered the instance, so older failures no longer count.
SUPERSEDING_STATES = frozenset(
    {OperationState.SUCCEEDED, OperationState.RETRYING, OperationState.IN_PROGRESS}
)


@dataclass(frozen=True)
class InstanceStatus:
    instance_id: str
    states: tuple[OperationState, ...]
    failed: bool
    # newest failed record, set only when the instance is genuinely failed
    representative_failure: Optional[Operation] = None


@dataclass(frozen=True)
class CampaignStatus:
    campaign_id: str
    counts: dict[OperationState, int] = field(default_factory=dict)
    failed: tuple[Operation, ...] = ()

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def group_by_instance(operations: Iterable[Operation]) -> dict[str, list[Operation]]:
    grouped: dict[str, list[Operation]] = defaultdict(list)
    for op in operations:
        grouped[op.instance_id].append(op)
    return dict(grouped)


def instance_status(instance_id: str, operations: Iterable[Operation]) -> InstanceStatus:
    """
    Derive the status of one instance from its operation history.

    The instance is failed only when it has a failed record and no record in
    SUPERSEDING_STATES. The most recently created failure represents it;
    on equal timestamps the later one in input order wins.
    """
    ops = list(operations)
    states = tuple(op.state for op in ops)
    if any(state in SUPERSEDING_STATES for state in states):
        return InstanceStatus(instance_id=instance_id, states=states, failed=False)

    representative: Optional[Operation] = None
    for op in ops:
        if op.state != OperationState.FAILED:
            continue
        if representative is None or representative.created_at <= op.created_at:
            representative = op

    return InstanceStatus(
        instance_id=instance_id,
        states=states,
        failed=representative is not None,
        representative_failure=representative,
    )


def reduce_instances(operations: Iterable[Operation]) -> dict[str, InstanceStatus]:
    return {
        instance_id: instance_status(instance_id, ops)
        for instance_id, ops in group_by_instance(operations).items()
    }


def failed_instances(operations: Iterable[Operation]) -> list[Operation]:
    """Representative failure of every genuinely failed instance, oldest first."""
    failures = [
        status.representative_failure
        for status in reduce_instances(operations).values()
        if status.failed and status.representative_failure is not None
    ]
    return sorted(failures, key=lambda op: (op.created_at, op.instance_id))


def campaign_status(campaign_id: str, operations: Iterable[Operation]) -> CampaignStatus:
    """
    Per-state counts for a campaign.

    Failed counts genuinely failed instances; every other state counts
    records as they are stored.
    """
    ops = list(operations)
    counts = {state: 0 for state in OperationState}
    for op in ops:
        if op.state != OperationState.FAILED:
            counts[op.state] += 1
    failed = failed_instances(ops)
    counts[OperationState.FAILED] = len(failed)
    return CampaignStatus(campaign_id=campaign_id, counts=counts, failed=tuple(failed))
