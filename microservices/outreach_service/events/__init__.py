"""
Outreach Service Events

Event handlers and publishers for outreach service.
"""

from .models import (
    OutreachEventType,
    OutreachSubscribedEventType,
    OutreachStreamConfig,
    SegmentCreatedEventData,
    CampaignCreatedEventData,
    CampaignScheduledEventData,
    CampaignActivatedEventData,
    CampaignCompletedEventData,
    CampaignFailedEventData,
    CampaignCancelledEventData,
    DeliveryFailedEventData,
    DeliveryReceiptEventData,
)
from .handlers import OutreachEventHandler
from .publishers import OutreachEventPublisher

__all__ = [
    # Event Types
    "OutreachEventType",
    "OutreachSubscribedEventType",
    "OutreachStreamConfig",
    # Event Data Models
    "SegmentCreatedEventData",
    "CampaignCreatedEventData",
    "CampaignScheduledEventData",
    "CampaignActivatedEventData",
    "CampaignCompletedEventData",
    "CampaignFailedEventData",
    "CampaignCancelledEventData",
    "DeliveryFailedEventData",
    "DeliveryReceiptEventData",
    # Handler and Publisher
    "OutreachEventHandler",
    "OutreachEventPublisher",
]
