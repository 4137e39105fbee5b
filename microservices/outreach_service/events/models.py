"""
Outreach Event Data Models

Event type definitions and data structures for outreach service events.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Event Type Definitions
# =============================================================================


class OutreachEventType(str, Enum):
    """
    Events published by outreach_service.

    These are the authoritative event types for this service.
    Other services should reference these when subscribing.
    """
    # Segment events
    SEGMENT_CREATED = "outreach.segment.created"

    # Campaign lifecycle events
    CAMPAIGN_CREATED = "outreach.campaign.created"
    CAMPAIGN_SCHEDULED = "outreach.campaign.scheduled"
    CAMPAIGN_ACTIVATED = "outreach.campaign.activated"
    CAMPAIGN_COMPLETED = "outreach.campaign.completed"
    CAMPAIGN_FAILED = "outreach.campaign.failed"
    CAMPAIGN_CANCELLED = "outreach.campaign.cancelled"

    # Delivery events
    DELIVERY_FAILED = "outreach.campaign.delivery.failed"


class OutreachSubscribedEventType(str, Enum):
    """
    Events that outreach_service subscribes to.
    """
    # Broker receipts
    DELIVERY_RECEIPT = "outreach.delivery.receipt"


class OutreachStreamConfig:
    """Stream configuration for outreach_service"""
    STREAM_NAME = "OUTREACH"
    SUBJECTS = ["outreach.>"]
    CONSUMER_PREFIX = "outreach"


# =============================================================================
# Event Data Models - Published Events
# =============================================================================


class SegmentCreatedEventData(BaseModel):
    """outreach.segment.created event data"""
    segment_id: str = Field(..., description="Segment ID")
    name: str = Field(..., description="Segment name")
    audience_size: int = Field(..., description="Audience size at creation")
    created_by: Optional[str] = Field(None, description="Creator")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCreatedEventData(BaseModel):
    """outreach.campaign.created event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    name: str = Field(..., description="Campaign name")
    segment_id: Optional[str] = Field(None, description="Target segment, if any")
    created_by: Optional[str] = Field(None, description="Creator")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignScheduledEventData(BaseModel):
    """outreach.campaign.scheduled event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    scheduled_at: str = Field(..., description="Scheduled send time (ISO format)")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignActivatedEventData(BaseModel):
    """outreach.campaign.activated event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    audience_size: int = Field(..., description="Resolved audience size")
    sent_at: Optional[str] = Field(None, description="Activation time (ISO format)")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCompletedEventData(BaseModel):
    """outreach.campaign.completed event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    audience_size: int = Field(..., description="Audience size")
    delivered: int = Field(..., description="Delivered count")
    failed: int = Field(..., description="Failed count")
    delivered_percentage: float = Field(..., description="Delivered share of audience")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignFailedEventData(BaseModel):
    """outreach.campaign.failed event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    error: str = Field(..., description="Causing error")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCancelledEventData(BaseModel):
    """outreach.campaign.cancelled event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    previous_status: str = Field(..., description="Status before cancellation")
    reason: Optional[str] = Field(None, description="Cancellation reason")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class DeliveryFailedEventData(BaseModel):
    """outreach.campaign.delivery.failed event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    recipient_id: str = Field(..., description="Recipient ID")
    attempts: int = Field(..., description="Send attempts made")
    error: Optional[str] = Field(None, description="Failure reason")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


# =============================================================================
# Event Data Models - Subscribed Events
# =============================================================================


class DeliveryReceiptEventData(BaseModel):
    """outreach.delivery.receipt event data (from the message broker)"""
    campaign_id: str = Field(..., description="Campaign ID")
    recipient_id: str = Field(..., description="Recipient ID")
    status: str = Field(..., description="delivered or failed")
    error_message: Optional[str] = Field(None, description="Failure reason")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Broker metadata")


__all__ = [
    "OutreachEventType",
    "OutreachSubscribedEventType",
    "OutreachStreamConfig",
    "SegmentCreatedEventData",
    "CampaignCreatedEventData",
    "CampaignScheduledEventData",
    "CampaignActivatedEventData",
    "CampaignCompletedEventData",
    "CampaignFailedEventData",
    "CampaignCancelledEventData",
    "DeliveryFailedEventData",
    "DeliveryReceiptEventData",
]
