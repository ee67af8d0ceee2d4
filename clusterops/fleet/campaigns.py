from __future__ import annotations

from ..storage.base import OperationRepository
from ..storage.models import OperationFilter, OperationPage, OperationState
from .reducer import CampaignStatus, campaign_status, failed_instances


class CampaignView:
    """Read-only campaign queries derived from the operation history."""

    def __init__(self, repository: OperationRepository) -> None:
        self.repository = repository

    def status(self, campaign_id: str) -> CampaignStatus:
        return campaign_status(campaign_id, self.repository.list_by_campaign_id(campaign_id))

    def list_operations(self, campaign_id: str, filter: OperationFilter) -> OperationPage:
        """
        Page through a campaign's operations.

        When the filter asks for failed operations, the failed part is not a
        plain state match: it holds one representative per genuinely failed
        instance and is appended after the page for the remaining states.
        """
        if OperationState.FAILED not in filter.states:
            return self.repository.list_by_filter(
                OperationFilter(
                    page=filter.page,
                    page_size=filter.page_size,
                    states=filter.states,
                    types=filter.types,
                    instance_ids=filter.instance_ids,
                    campaign_id=campaign_id,
                )
            )

        items, count, total = [], 0, 0
        other_states = [s for s in filter.states if s != OperationState.FAILED]
        if other_states:
            page = self.repository.list_by_filter(
                OperationFilter(
                    page=filter.page,
                    page_size=filter.page_size,
                    states=other_states,
                    types=filter.types,
                    instance_ids=filter.instance_ids,
                    campaign_id=campaign_id,
                )
            )
            items.extend(page.items)
            count += page.count
            total += page.total_count

        failures = [
            op
            for op in failed_instances(self.repository.list_by_campaign_id(campaign_id))
            if (not filter.types or op.type in filter.types)
            and (not filter.instance_ids or op.instance_id in filter.instance_ids)
        ]
        items.extend(failures)
        count += len(failures)
        total += len(failures)
        return OperationPage(items=items, count=count, total_count=total)
