"""
Outreach Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
    Campaign,
    CampaignStatus,
    Customer,
    DeliveryRecord,
    DeliveryStatus,
    Segment,
    SendResult,
)


# ====================
# Repository Protocols
# ====================


class CustomerStoreProtocol(Protocol):
    """Protocol for the customer store the rule evaluator queries"""

    async def find_customers(self, predicates: Sequence[Any]) -> List[Customer]:
        """
        Return active customers that may satisfy any of the predicates.

        The result may be a superset; callers apply the exact predicates.
        """
        ...


class SegmentRepositoryProtocol(Protocol):
    """Protocol for segment persistence"""

    async def save_segment(self, segment: Segment) -> Segment:
        """Insert or update a segment"""
        ...

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        """Get segment by ID"""
        ...

    async def list_segments(
        self,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Segment], int]:
        """List segments with optional name/description search"""
        ...

    async def update_segment(
        self,
        segment_id: str,
        updates: Dict[str, Any],
        frozen_by: Optional[Sequence[CampaignStatus]] = None,
    ) -> Optional[Segment]:
        """Update segment fields unless a campaign in a frozen_by status references it"""
        ...

    async def delete_segment(self, segment_id: str) -> bool:
        """Delete segment"""
        ...


class CampaignRepositoryProtocol(Protocol):
    """Protocol for campaign and delivery record persistence"""

    # Campaign CRUD
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or update a campaign"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        ...

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        segment_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List campaigns with filters"""
        ...

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete campaign and its delivery records"""
        ...

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: Sequence[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        """
        Compare-and-set status change.

        Returns the updated campaign, or None if the current status was not
        one of from_statuses.
        """
        ...

    async def claim_due_campaign(self, campaign_id: str, now: datetime) -> Optional[Campaign]:
        """Atomically move a due Scheduled campaign to Active; None if lost"""
        ...

    async def list_due_campaigns(self, now: datetime, limit: int = 100) -> List[Campaign]:
        """Scheduled campaigns with scheduled_at <= now"""
        ...

    async def get_campaign_status(self, campaign_id: str) -> Optional[CampaignStatus]:
        """Current status only"""
        ...

    async def count_campaigns_for_segment(
        self, segment_id: str, status: Optional[List[CampaignStatus]] = None
    ) -> int:
        """Number of campaigns referencing a segment"""
        ...

    # Delivery records
    async def create_delivery_records(
        self, campaign_id: str, records: List[DeliveryRecord]
    ) -> int:
        """Bulk-insert Pending records; existing (campaign, recipient) pairs are kept"""
        ...

    async def get_delivery_record(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[DeliveryRecord]:
        """Get one delivery record"""
        ...

    async def list_delivery_records(
        self,
        campaign_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[DeliveryRecord], int]:
        """List delivery records for a campaign"""
        ...

    async def update_delivery_record(
        self, campaign_id: str, recipient_id: str, **fields: Any
    ) -> Optional[DeliveryRecord]:
        """Update one delivery record"""
        ...

    async def mark_records_sent(
        self, campaign_id: str, recipient_ids: List[str], sent_at: datetime
    ) -> int:
        """Stamp sent_at on accepted sends"""
        ...

    async def fail_pending_records(
        self,
        campaign_id: str,
        recipient_ids: Optional[List[str]],
        error: str,
        attempted: bool = True,
    ) -> int:
        """
        Mark Pending records Failed; all Pending records when recipient_ids is None.

        attempted=False leaves the attempt counter alone for records that were
        never handed to the broker.
        """
        ...

    async def count_records_by_status(self, campaign_id: str) -> Dict[str, int]:
        """Delivery record counts keyed by status value"""
        ...

    async def recompute_stats(self, campaign_id: str) -> Optional[Campaign]:
        """Recompute stats counts from delivery records and persist them"""
        ...


# ====================
# Collaborator Protocols
# ====================


class MessageBrokerProtocol(Protocol):
    """Protocol for the outbound message broker"""

    async def send(
        self, recipient_id: str, message: str, campaign_id: Optional[str] = None
    ) -> SendResult:
        """
        Submit one message.

        Raises TransientBrokerError on connection failure; returns
        SendResult(accepted=False) or raises RecipientDeliveryError when the
        broker rejects this recipient.
        """
        ...


class EventPublisherProtocol(Protocol):
    """Protocol for event publishing"""

    async def publish(self, event_type: Any, data: Dict[str, Any]) -> bool:
        """Publish event"""
        ...


# ====================
# Custom Exceptions
# ====================


class OutreachServiceError(Exception):
    """Base exception for outreach service"""
    pass


class ValidationError(OutreachServiceError):
    """Malformed or incomplete input, surfaced to the caller and never retried"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class RuleValidationError(ValidationError):
    """Rule tree is incomplete, empty or holds a value of the wrong type"""

    def __init__(self, message: str, path: str = "$"):
        super().__init__(f"{message} at {path}", field="rule_tree")
        self.path = path


class InvalidRuleError(OutreachServiceError):
    """Unknown field or operator in a rule tree - configuration error"""

    def __init__(self, message: str, path: str = "$"):
        super().__init__(f"{message} at {path}")
        self.path = path


class SegmentNotFoundError(OutreachServiceError):
    """Segment not found"""
    pass


class SegmentInUseError(OutreachServiceError):
    """Segment is referenced by campaigns and cannot change"""
    pass


class CampaignNotFoundError(OutreachServiceError):
    """Campaign not found"""
    pass


class DeliveryRecordNotFoundError(OutreachServiceError):
    """No delivery record for the (campaign, recipient) pair"""
    pass


class InvalidCampaignStateError(OutreachServiceError):
    """Invalid campaign state for operation"""

    def __init__(self, message: str, current_status: Optional[CampaignStatus] = None):
        super().__init__(message)
        self.current_status = current_status


class AudienceResolutionError(OutreachServiceError):
    """Error resolving campaign audience"""
    pass


class TransientBrokerError(OutreachServiceError):
    """Broker unreachable, erroring or timing out - retried with backoff"""
    pass


class RecipientDeliveryError(OutreachServiceError):
    """Broker rejected or bounced one recipient"""

    def __init__(self, message: str, recipient_id: Optional[str] = None):
        super().__init__(message)
        self.recipient_id = recipient_id


__all__ = [
    # Protocols
    "CustomerStoreProtocol",
    "SegmentRepositoryProtocol",
    "CampaignRepositoryProtocol",
    "MessageBrokerProtocol",
    "EventPublisherProtocol",
    # Exceptions
    "OutreachServiceError",
    "ValidationError",
    "RuleValidationError",
    "InvalidRuleError",
    "SegmentNotFoundError",
    "SegmentInUseError",
    "CampaignNotFoundError",
    "DeliveryRecordNotFoundError",
    "InvalidCampaignStateError",
    "AudienceResolutionError",
    "TransientBrokerError",
    "RecipientDeliveryError",
]
