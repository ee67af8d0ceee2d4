from __future__ import annotations

import pytest

from clusterops.fleet.campaigns import CampaignView
from clusterops.storage.memory import InMemoryOperationRepository
from clusterops.storage.models import OperationFilter, OperationState, OperationType


@pytest.fixture
def campaign(make_operation):
    repo = InMemoryOperationRepository()
    ops = {
        "a1": make_operation("A", OperationType.UPGRADE_KYMA, state=OperationState.FAILED, campaign_id="c"),
        "a3": make_operation("A", OperationType.UPGRADE_KYMA, state=OperationState.FAILED, campaign_id="c"),
        "b1": make_operation("B", OperationType.UPGRADE_KYMA, state=OperationState.FAILED, campaign_id="c"),
        "b2": make_operation("B", OperationType.UPGRADE_KYMA, state=OperationState.SUCCEEDED, campaign_id="c"),
        "d1": make_operation("D", OperationType.UPGRADE_CLUSTER, state=OperationState.FAILED, campaign_id="c"),
        "x1": make_operation("X", OperationType.UPGRADE_KYMA, state=OperationState.FAILED, campaign_id="other"),
    }
    for op in ops.values():
        repo.insert(op)
    return CampaignView(repo), ops


def test_failed_filter_lists_genuine_failures_only(campaign) -> None:
    view, ops = campaign

    page = view.list_operations("c", OperationFilter(states=[OperationState.FAILED]))

    assert [op.id for op in page.items] == [ops["a3"].id, ops["d1"].id]
    assert (page.count, page.total_count) == (2, 2)


def test_failed_part_is_appended_to_other_states(campaign) -> None:
    view, ops = campaign

    page = view.list_operations(
        "c", OperationFilter(states=[OperationState.SUCCEEDED, OperationState.FAILED])
    )

    assert [op.id for op in page.items] == [ops["b2"].id, ops["a3"].id, ops["d1"].id]
    assert (page.count, page.total_count) == (3, 3)


def test_failed_part_respects_type_filter(campaign) -> None:
    view, ops = campaign

    page = view.list_operations(
        "c", OperationFilter(states=[OperationState.FAILED], types=[OperationType.UPGRADE_CLUSTER])
    )

    assert [op.id for op in page.items] == [ops["d1"].id]


def test_without_failed_filter_records_are_paged_as_stored(campaign) -> None:
    view, ops = campaign

    page = view.list_operations("c", OperationFilter(page=1, page_size=2))

    assert [op.id for op in page.items] == [ops["a1"].id, ops["a3"].id]
    assert page.total_count == 5


def test_status(campaign) -> None:
    view, ops = campaign

    status = view.status("c")

    assert status.counts[OperationState.FAILED] == 2
    assert status.counts[OperationState.SUCCEEDED] == 1
    assert status.failed == (ops["a3"], ops["d1"])
