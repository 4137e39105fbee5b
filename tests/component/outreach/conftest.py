"""
Component Test Fixtures for Outreach Service

Provides in-memory repositories with the same compare-and-set semantics
as the PostgreSQL ones, a scriptable message broker and an event recorder,
plus fixtures wiring the real services on top of them.
"""

import asyncio
import pytest
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.outreach.data_contract import (
    Campaign,
    CampaignStats,
    CampaignStatus,
    Customer,
    DeliveryRecord,
    DeliveryStatus,
    Segment,
    SendResult,
    OutreachTestDataFactory,
)
from core.config import DispatchConfig, SchedulerConfig
from microservices.outreach_service.campaign_service import CampaignService
from microservices.outreach_service.delivery_reconciler import DeliveryReconciler
from microservices.outreach_service.dispatcher import CampaignDispatcher
from microservices.outreach_service.protocols import TransientBrokerError
from microservices.outreach_service.scheduler import CampaignScheduler
from microservices.outreach_service.segment_service import SegmentService


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ====================
# Mock Customer Store
# ====================


class MockCustomerStore:
    """Customer store returning every active customer as a candidate"""

    def __init__(self):
        self.customers: Dict[str, Customer] = {}
        self.fail_with: Optional[Exception] = None

    def add(self, customers: Iterable[Customer]) -> None:
        for customer in customers:
            self.customers[customer.customer_id] = customer

    async def find_customers(self, predicates: Sequence[Any]) -> List[Customer]:
        if self.fail_with is not None:
            raise self.fail_with
        return [c for c in self.customers.values() if c.is_active]


# ====================
# Mock Repositories
# ====================


class MockSegmentRepository:
    """Mock segment repository for component testing"""

    def __init__(self):
        self.segments: Dict[str, Segment] = {}
        # Campaign state for frozen_by checks; wired by the segment_repository fixture
        self.campaign_repository: Optional["MockCampaignRepository"] = None

    async def save_segment(self, segment: Segment) -> Segment:
        self.segments[segment.segment_id] = segment
        return segment

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        return self.segments.get(segment_id)

    async def list_segments(
        self, search: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Tuple[List[Segment], int]:
        results = list(self.segments.values())
        if search:
            needle = search.lower()
            results = [
                s for s in results
                if needle in s.name.lower() or needle in (s.description or "").lower()
            ]
        return results[offset:offset + limit], len(results)

    async def update_segment(
        self,
        segment_id: str,
        updates: Dict[str, Any],
        frozen_by: Optional[Sequence[CampaignStatus]] = None,
    ) -> Optional[Segment]:
        segment = self.segments.get(segment_id)
        if segment is None:
            return None
        if frozen_by and self.campaign_repository is not None:
            if await self.campaign_repository.count_campaigns_for_segment(segment_id, list(frozen_by)):
                return None
        segment = segment.model_copy(update={**updates, "updated_at": _now()})
        self.segments[segment_id] = segment
        return segment

    async def delete_segment(self, segment_id: str) -> bool:
        return self.segments.pop(segment_id, None) is not None


class MockCampaignRepository:
    """
    Mock campaign repository for component testing.

    Status changes are compare-and-set under one lock, mirroring the
    conditional UPDATE of the real repository.
    """

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.records: Dict[str, Dict[str, DeliveryRecord]] = {}
        self._lock = asyncio.Lock()
        self.claim_attempts = 0

    # Campaign operations
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self.campaigns.get(campaign_id)

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        segment_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        results = list(self.campaigns.values())
        if status:
            results = [c for c in results if c.status in status]
        if segment_id:
            results = [c for c in results if c.segment_id == segment_id]
        if search:
            results = [c for c in results if search.lower() in c.name.lower()]
        return results[offset:offset + limit], len(results)

    async def delete_campaign(self, campaign_id: str) -> bool:
        self.records.pop(campaign_id, None)
        return self.campaigns.pop(campaign_id, None) is not None

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: Sequence[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        async with self._lock:
            campaign = self.campaigns.get(campaign_id)
            if campaign is None or campaign.status not in from_statuses:
                return None
            campaign = campaign.model_copy(
                update={**fields, "status": to_status, "updated_at": _now()}
            )
            self.campaigns[campaign_id] = campaign
            return campaign

    async def claim_due_campaign(self, campaign_id: str, now: datetime) -> Optional[Campaign]:
        self.claim_attempts += 1
        async with self._lock:
            campaign = self.campaigns.get(campaign_id)
            if campaign is None or campaign.status != CampaignStatus.SCHEDULED:
                return None
            if campaign.scheduled_at is None or campaign.scheduled_at > now:
                return None
            # let racing claimers reach the lock
            await asyncio.sleep(0)
            campaign = campaign.model_copy(
                update={"status": CampaignStatus.ACTIVE, "sent_at": now, "updated_at": now}
            )
            self.campaigns[campaign_id] = campaign
            return campaign

    async def list_due_campaigns(self, now: datetime, limit: int = 100) -> List[Campaign]:
        due = [
            c for c in self.campaigns.values()
            if c.status == CampaignStatus.SCHEDULED and c.scheduled_at and c.scheduled_at <= now
        ]
        due.sort(key=lambda c: c.scheduled_at)
        return due[:limit]

    async def get_campaign_status(self, campaign_id: str) -> Optional[CampaignStatus]:
        campaign = self.campaigns.get(campaign_id)
        return campaign.status if campaign else None

    async def count_campaigns_for_segment(
        self, segment_id: str, status: Optional[List[CampaignStatus]] = None
    ) -> int:
        return len([
            c for c in self.campaigns.values()
            if c.segment_id == segment_id and (not status or c.status in status)
        ])

    # Delivery record operations
    async def create_delivery_records(self, campaign_id: str, records: List[DeliveryRecord]) -> int:
        existing = self.records.setdefault(campaign_id, {})
        created = 0
        now = _now()
        for record in records:
            if record.recipient_id in existing:
                continue
            existing[record.recipient_id] = record.model_copy(
                update={"status": DeliveryStatus.PENDING, "created_at": now, "updated_at": now}
            )
            created += 1
        return created

    async def get_delivery_record(self, campaign_id: str, recipient_id: str) -> Optional[DeliveryRecord]:
        return self.records.get(campaign_id, {}).get(recipient_id)

    async def list_delivery_records(
        self,
        campaign_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[DeliveryRecord], int]:
        results = list(self.records.get(campaign_id, {}).values())
        if status:
            results = [r for r in results if r.status == status]
        return results[offset:offset + limit], len(results)

    async def update_delivery_record(
        self, campaign_id: str, recipient_id: str, **fields: Any
    ) -> Optional[DeliveryRecord]:
        record = self.records.get(campaign_id, {}).get(recipient_id)
        if record is None:
            return None
        if "status" in fields:
            fields["status"] = DeliveryStatus(fields["status"])
        record = record.model_copy(update={**fields, "updated_at": _now()})
        self.records[campaign_id][recipient_id] = record
        return record

    async def mark_records_sent(self, campaign_id: str, recipient_ids: List[str], sent_at: datetime) -> int:
        updated = 0
        for rid in recipient_ids:
            record = self.records.get(campaign_id, {}).get(rid)
            if record is None:
                continue
            self.records[campaign_id][rid] = record.model_copy(
                update={"sent_at": sent_at, "updated_at": sent_at}
            )
            updated += 1
        return updated

    async def fail_pending_records(
        self,
        campaign_id: str,
        recipient_ids: Optional[List[str]],
        error: str,
        attempted: bool = True,
    ) -> int:
        if recipient_ids is not None and not recipient_ids:
            return 0
        records = self.records.get(campaign_id, {})
        targets = records.keys() if recipient_ids is None else recipient_ids
        failed = 0
        for rid in list(targets):
            record = records.get(rid)
            if record is None or record.status != DeliveryStatus.PENDING:
                continue
            records[rid] = record.model_copy(update={
                "status": DeliveryStatus.FAILED,
                "last_error": error,
                "attempts": record.attempts + 1 if attempted else record.attempts,
                "updated_at": _now(),
            })
            failed += 1
        return failed

    async def count_records_by_status(self, campaign_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in DeliveryStatus}
        for record in self.records.get(campaign_id, {}).values():
            counts[record.status.value] += 1
        return counts

    async def recompute_stats(self, campaign_id: str) -> Optional[Campaign]:
        async with self._lock:
            campaign = self.campaigns.get(campaign_id)
            if campaign is None:
                return None
            counts = await self.count_records_by_status(campaign_id)
            stats = CampaignStats(
                delivered=counts[DeliveryStatus.DELIVERED.value],
                failed=counts[DeliveryStatus.FAILED.value],
                pending=counts[DeliveryStatus.PENDING.value],
                audience_size=campaign.audience_size,
            )
            campaign = campaign.model_copy(update={"stats": stats, "updated_at": _now()})
            self.campaigns[campaign_id] = campaign
            return campaign

    # Test helpers
    def records_for(self, campaign_id: str) -> List[DeliveryRecord]:
        return list(self.records.get(campaign_id, {}).values())

    def statuses_for(self, campaign_id: str) -> Dict[str, DeliveryStatus]:
        return {r.recipient_id: r.status for r in self.records_for(campaign_id)}


# ====================
# Mock Broker
# ====================


class MockBroker:
    """
    Scriptable message broker.

    reject_ids are refused per recipient, slow_ids never answer,
    transient_failures fails the next N calls and always_transient fails
    every call as if the broker were down.
    """

    def __init__(self):
        self.calls: List[str] = []
        self.accepted: List[str] = []
        self.reject_ids: Set[str] = set()
        self.slow_ids: Set[str] = set()
        self.transient_failures = 0
        self.always_transient = False
        self.delay = 0.0
        self.on_send = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, recipient_id: str, message: str, campaign_id: Optional[str] = None) -> SendResult:
        self.calls.append(recipient_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.on_send is not None:
                await self.on_send(recipient_id)
            if recipient_id in self.slow_ids:
                await asyncio.sleep(60)
            if self.always_transient:
                raise TransientBrokerError("broker unavailable")
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientBrokerError("connection reset")
            if recipient_id in self.reject_ids:
                return SendResult(accepted=False, error="invalid address")
            self.accepted.append(recipient_id)
            return SendResult(accepted=True, message_id=f"msg_{len(self.accepted)}")
        finally:
            self.in_flight -= 1


# ====================
# Mock Event Publisher
# ====================


class MockEventPublisher:
    """Records published events"""

    def __init__(self):
        self.published_events: List[Dict[str, Any]] = []

    async def publish(self, event_type, data: Dict[str, Any]) -> bool:
        self.published_events.append({
            "event_type": getattr(event_type, "value", event_type),
            "data": data,
        })
        return True

    def get_events_by_type(self, event_type) -> List[Dict[str, Any]]:
        name = getattr(event_type, "value", event_type)
        return [e for e in self.published_events if e["event_type"] == name]

    def clear_events(self):
        self.published_events = []


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    """Provide test data factory"""
    return OutreachTestDataFactory()


@pytest.fixture
def customer_store():
    return MockCustomerStore()


@pytest.fixture
def segment_repository(campaign_repository):
    repository = MockSegmentRepository()
    repository.campaign_repository = campaign_repository
    return repository


@pytest.fixture
def campaign_repository():
    return MockCampaignRepository()


@pytest.fixture
def broker():
    return MockBroker()


@pytest.fixture
def event_publisher():
    return MockEventPublisher()


@pytest.fixture
def dispatch_config():
    """Small batches, no backoff sleeps, short send timeout"""
    return DispatchConfig(
        batch_size=10,
        worker_pool_size=4,
        send_timeout_seconds=0.2,
        max_batch_attempts=3,
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
    )


@pytest.fixture
def scheduler_config():
    return SchedulerConfig(enabled=True, poll_interval_seconds=0.01, max_concurrent_dispatches=4)


@pytest.fixture
def segment_service(segment_repository, customer_store, campaign_repository, event_publisher):
    return SegmentService(
        repository=segment_repository,
        customer_store=customer_store,
        campaign_repository=campaign_repository,
        event_publisher=event_publisher,
    )


@pytest.fixture
def campaign_service(campaign_repository, segment_repository, customer_store, event_publisher):
    return CampaignService(
        repository=campaign_repository,
        segment_repository=segment_repository,
        customer_store=customer_store,
        event_publisher=event_publisher,
    )


@pytest.fixture
def dispatcher(campaign_service, broker, dispatch_config):
    return CampaignDispatcher(campaign_service, broker, config=dispatch_config)


@pytest.fixture
def reconciler(campaign_service, dispatcher, event_publisher):
    return DeliveryReconciler(campaign_service, dispatcher=dispatcher, event_publisher=event_publisher)


@pytest.fixture
def scheduler(campaign_service, dispatcher, scheduler_config):
    return CampaignScheduler(campaign_service, dispatcher, config=scheduler_config)


@pytest.fixture
def everyone_rules(factory):
    """Rule tree selecting every active customer"""
    return factory.make_group("AND", factory.make_condition("is_active", "equals", True))


@pytest.fixture
def schedule_campaign(campaign_service, customer_store, factory, everyone_rules):
    """Create a campaign targeting the given customers and schedule it for now"""
    async def _schedule(customers: List[Customer], message: str = "Hi {{name}}!") -> Campaign:
        customer_store.add(customers)
        campaign = await campaign_service.create_campaign(
            factory.make_campaign_create_request(custom_rules=everyone_rules, message=message)
        )
        return await campaign_service.schedule_campaign(campaign.campaign_id)
    return _schedule


@pytest.fixture
def activate_campaign(campaign_service, schedule_campaign):
    """Create, schedule and claim a campaign; returns the ActivatedCampaign"""
    async def _activate(customers: List[Customer], message: str = "Hi {{name}}!"):
        campaign = await schedule_campaign(customers, message=message)
        return await campaign_service.activate_scheduled_campaign(campaign.campaign_id)
    return _activate
