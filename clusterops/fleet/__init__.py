from .campaigns import CampaignView
from .reducer import (
    CampaignStatus,
    InstanceStatus,
    campaign_status,
    failed_instances,
    instance_status,
    reduce_instances,
)

__all__ = [
    "CampaignStatus",
    "CampaignView",
    "InstanceStatus",
    "campaign_status",
    "failed_instances",
    "instance_status",
    "reduce_instances",
]
