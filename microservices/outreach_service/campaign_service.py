"""
Campaign Service Business Logic

Implements the campaign lifecycle state machine:

    draft -> scheduled -> active -> {completed, failed}

plus operator cancellation from any non-terminal state. Every status change
in storage is a compare-and-set on the expected current status, so the
scheduled -> active claim has at most one winner.
"""

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .events.models import (
    CampaignActivatedEventData,
    CampaignCancelledEventData,
    CampaignCompletedEventData,
    CampaignCreatedEventData,
    CampaignFailedEventData,
    CampaignScheduledEventData,
    OutreachEventType,
)
from .models import (
    ActivatedCampaign,
    Campaign,
    CampaignCreateRequest,
    CampaignStats,
    CampaignStatsResponse,
    CampaignStatus,
    CampaignUpdateRequest,
    DeliveryRecord,
    DeliveryStatus,
    RuleNode,
    ensure_utc,
)
from .protocols import (
    AudienceResolutionError,
    CampaignNotFoundError,
    CampaignRepositoryProtocol,
    CustomerStoreProtocol,
    EventPublisherProtocol,
    InvalidCampaignStateError,
    SegmentRepositoryProtocol,
    ValidationError,
)
from .rule_evaluator import RuleEvaluator, parse_rule_tree, validate_rule_tree

logger = logging.getLogger(__name__)


class CampaignService:
    """Campaign service business logic layer"""

    MAX_NAME_LENGTH = 255

    # Valid state transitions
    VALID_TRANSITIONS = {
        CampaignStatus.DRAFT: [CampaignStatus.SCHEDULED, CampaignStatus.CANCELLED],
        CampaignStatus.SCHEDULED: [CampaignStatus.ACTIVE, CampaignStatus.CANCELLED],
        CampaignStatus.ACTIVE: [CampaignStatus.COMPLETED, CampaignStatus.FAILED, CampaignStatus.CANCELLED],
        CampaignStatus.COMPLETED: [],  # Terminal state
        CampaignStatus.FAILED: [],  # Terminal state
        CampaignStatus.CANCELLED: [],  # Terminal state
    }

    # Fields that may change after a campaign leaves draft
    MUTABLE_AFTER_DRAFT = {"name", "description", "tags"}

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        segment_repository: SegmentRepositoryProtocol,
        customer_store: CustomerStoreProtocol,
        evaluator: Optional[RuleEvaluator] = None,
        event_publisher: Optional[EventPublisherProtocol] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.segment_repository = segment_repository
        self.customer_store = customer_store
        self.evaluator = evaluator or RuleEvaluator(clock=clock)
        self.event_publisher = event_publisher
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        # Holders and waiters keep a lock alive; idle ones drop out on their own
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _now(self) -> datetime:
        return self.clock()

    def campaign_lock(self, campaign_id: str) -> asyncio.Lock:
        """Per-campaign lock serializing delivery record updates and stats recompute"""
        lock = self._locks.get(campaign_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[campaign_id] = lock
        return lock

    # ====================
    # Campaign CRUD
    # ====================

    async def create_campaign(
        self,
        request: CampaignCreateRequest,
        created_by: Optional[str] = None,
    ) -> Campaign:
        """
        Create a campaign in draft status.

        Exactly one audience source is required: a segment_id naming an
        existing segment, or a custom rule tree.
        """
        name = self._validate_name(request.name)
        message = self._validate_message(request.message)

        custom_rule_tree = None
        if request.segment_id and request.custom_rule_tree is not None:
            raise ValidationError(
                "Campaign must target either segment_id or custom_rules, not both", "segment_id"
            )
        if request.segment_id:
            await self._require_segment(request.segment_id)
        elif request.custom_rule_tree is not None:
            custom_rule_tree = parse_rule_tree(request.custom_rule_tree)
        else:
            raise ValidationError("Campaign requires segment_id or custom_rules", "segment_id")

        now = self._now()
        campaign = Campaign(
            campaign_id=f"cmp_{uuid.uuid4().hex[:16]}",
            name=name,
            description=request.description,
            message=message,
            status=CampaignStatus.DRAFT,
            segment_id=request.segment_id or None,
            custom_rule_tree=custom_rule_tree,
            scheduled_at=ensure_utc(request.scheduled_at),
            tags=request.tags or [],
            metadata=request.metadata or {},
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        campaign = await self.repository.save_campaign(campaign)

        await self._publish_event(
            OutreachEventType.CAMPAIGN_CREATED,
            CampaignCreatedEventData(
                campaign_id=campaign.campaign_id,
                name=campaign.name,
                segment_id=campaign.segment_id,
                created_by=created_by,
                timestamp=now,
            ).model_dump(mode="json"),
        )

        logger.info(f"Campaign created: {campaign.campaign_id}")
        return campaign

    async def get_campaign(self, campaign_id: str) -> Campaign:
        """Get campaign by ID"""
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        return campaign

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        segment_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List campaigns with filters"""
        return await self.repository.list_campaigns(
            status=status,
            segment_id=segment_id,
            search=search,
            limit=limit,
            offset=offset,
        )

    async def update_campaign(self, campaign_id: str, request: CampaignUpdateRequest) -> Campaign:
        """
        Update a campaign.

        Drafts may change anything; afterwards only name, description and
        tags are editable.
        """
        campaign = await self.get_campaign(campaign_id)
        changes = request.model_dump(exclude_unset=True)
        if not changes:
            return campaign

        if campaign.status != CampaignStatus.DRAFT:
            locked = set(changes) - self.MUTABLE_AFTER_DRAFT
            if locked:
                raise InvalidCampaignStateError(
                    f"Cannot change {', '.join(sorted(locked))} of a {campaign.status.value} campaign",
                    campaign.status,
                )

        updates: Dict[str, Any] = {}
        for key, value in changes.items():
            if key == "name":
                updates["name"] = self._validate_name(value)
            elif key == "message":
                updates["message"] = self._validate_message(value)
            elif key == "scheduled_at":
                updates["scheduled_at"] = ensure_utc(value)
            elif key in ("segment_id", "custom_rule_tree"):
                continue
            else:
                updates[key] = value

        if "segment_id" in changes or "custom_rule_tree" in changes:
            segment_id = changes.get("segment_id")
            custom = changes.get("custom_rule_tree")
            if segment_id and custom is not None:
                raise ValidationError(
                    "Campaign must target either segment_id or custom_rules, not both", "segment_id"
                )
            if segment_id:
                await self._require_segment(segment_id)
                updates["segment_id"] = segment_id
                updates["custom_rule_tree"] = None
            elif custom is not None:
                updates["custom_rule_tree"] = parse_rule_tree(custom)
                updates["segment_id"] = None
            else:
                raise ValidationError("Campaign requires segment_id or custom_rules", "segment_id")

        updated = await self.repository.transition_status(
            campaign_id, [campaign.status], campaign.status, **updates
        )
        if not updated:
            raise InvalidCampaignStateError(
                f"Campaign {campaign_id} changed status during update", campaign.status
            )

        logger.info(f"Campaign updated: {campaign_id} ({', '.join(updates)})")
        return updated

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete a draft campaign"""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.DRAFT:
            raise InvalidCampaignStateError(
                "Only draft campaigns can be deleted", campaign.status
            )

        deleted = await self.repository.delete_campaign(campaign_id)
        if deleted:
            logger.info(f"Campaign deleted: {campaign_id}")
        return deleted

    # ====================
    # Lifecycle
    # ====================

    async def schedule_campaign(
        self,
        campaign_id: str,
        scheduled_at: Optional[datetime] = None,
    ) -> Campaign:
        """
        Move a draft campaign to scheduled.

        Requires a send time that is not in the past (the argument, else the
        stored one, else now) and a valid audience source.
        """
        campaign = await self.get_campaign(campaign_id)
        self._validate_state_transition(campaign.status, CampaignStatus.SCHEDULED)

        now = self._now()
        schedule_time = ensure_utc(scheduled_at) or campaign.scheduled_at or now
        if schedule_time < now:
            raise ValidationError("Scheduled time must not be in the past", "scheduled_at")

        rule_tree = await self._resolve_rule_tree(campaign)
        validate_rule_tree(rule_tree)

        scheduled = await self.repository.transition_status(
            campaign_id,
            [CampaignStatus.DRAFT],
            CampaignStatus.SCHEDULED,
            scheduled_at=schedule_time,
        )
        if not scheduled:
            raise InvalidCampaignStateError(
                "Only draft campaigns can be scheduled",
                await self.repository.get_campaign_status(campaign_id),
            )

        await self._publish_event(
            OutreachEventType.CAMPAIGN_SCHEDULED,
            CampaignScheduledEventData(
                campaign_id=campaign_id,
                scheduled_at=schedule_time.isoformat(),
                timestamp=now,
            ).model_dump(mode="json"),
        )

        logger.info(f"Campaign scheduled: {campaign_id} at {schedule_time}")
        return scheduled

    async def activate_scheduled_campaign(self, campaign_id: str) -> Optional[ActivatedCampaign]:
        """
        Claim a due campaign and resolve its audience.

        Returns None when another instance won the claim. Once claimed, any
        failure or cancellation before the recipients are handed back marks
        the campaign failed, so it is never left active with no dispatch
        running. Audience resolution failures raise AudienceResolutionError.
        """
        now = self._now()
        claimed = await self.repository.claim_due_campaign(campaign_id, now)
        if claimed is None:
            logger.debug(f"Claim lost for campaign {campaign_id}, skipping")
            return None

        try:
            try:
                rule_tree = await self._resolve_rule_tree(claimed)
                validate_rule_tree(rule_tree)
                result = await self.evaluator.evaluate(rule_tree, self.customer_store)
            except Exception as e:
                raise AudienceResolutionError(f"Audience resolution failed: {e}") from e

            audience_size = result.count
            campaign = await self.repository.transition_status(
                campaign_id,
                [CampaignStatus.ACTIVE],
                CampaignStatus.ACTIVE,
                audience_size=audience_size,
                stats=CampaignStats(pending=audience_size, audience_size=audience_size),
            )
        except asyncio.CancelledError:
            logger.warning(f"Campaign {campaign_id}: activation interrupted after claim")
            await asyncio.shield(
                self.fail_campaign(campaign_id, "Activation interrupted before dispatch")
            )
            raise
        except Exception as e:
            error = str(e) if isinstance(e, AudienceResolutionError) else f"Activation failed: {e}"
            logger.error(f"Campaign {campaign_id}: {error}")
            await self.fail_campaign(campaign_id, error)
            raise

        if campaign is None:
            logger.info(f"Campaign {campaign_id} left active before dispatch, skipping")
            return None

        await self._publish_event(
            OutreachEventType.CAMPAIGN_ACTIVATED,
            CampaignActivatedEventData(
                campaign_id=campaign_id,
                audience_size=audience_size,
                sent_at=campaign.sent_at.isoformat() if campaign.sent_at else None,
                timestamp=now,
            ).model_dump(mode="json"),
        )

        logger.info(f"Campaign activated: {campaign_id} ({audience_size} recipients)")
        return ActivatedCampaign(campaign=campaign, recipients=result.recipients)

    async def fail_campaign(self, campaign_id: str, error: str, **fields: Any) -> Optional[Campaign]:
        """Mark an active campaign failed, retaining the causing error"""
        failed = await self.repository.transition_status(
            campaign_id, [CampaignStatus.ACTIVE], CampaignStatus.FAILED, error=error, **fields
        )
        if failed is None:
            logger.warning(f"Campaign {campaign_id} not active, cannot mark failed: {error}")
            return None

        await self._publish_event(
            OutreachEventType.CAMPAIGN_FAILED,
            CampaignFailedEventData(
                campaign_id=campaign_id, error=error, timestamp=self._now()
            ).model_dump(mode="json"),
        )

        logger.error(f"Campaign failed: {campaign_id}: {error}")
        return failed

    async def cancel_campaign(self, campaign_id: str, reason: Optional[str] = None) -> Campaign:
        """
        Cancel a campaign that has not reached a terminal state.

        An active dispatch notices before its next batch; sends already
        submitted are not recalled.
        """
        campaign = await self.get_campaign(campaign_id)
        self._validate_state_transition(campaign.status, CampaignStatus.CANCELLED)

        metadata = dict(campaign.metadata)
        if reason:
            metadata["cancel_reason"] = reason

        cancelled = await self.repository.transition_status(
            campaign_id,
            [CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE],
            CampaignStatus.CANCELLED,
            cancelled_at=self._now(),
            metadata=metadata,
        )
        if not cancelled:
            current = await self.repository.get_campaign_status(campaign_id)
            raise InvalidCampaignStateError(
                f"Cannot cancel campaign in {current.value if current else 'unknown'} status", current
            )

        await self._publish_event(
            OutreachEventType.CAMPAIGN_CANCELLED,
            CampaignCancelledEventData(
                campaign_id=campaign_id,
                previous_status=campaign.status.value,
                reason=reason,
                timestamp=self._now(),
            ).model_dump(mode="json"),
        )

        logger.info(f"Campaign cancelled: {campaign_id} (was {campaign.status.value})")
        return cancelled

    async def refresh_stats(self, campaign_id: str) -> Campaign:
        """
        Recompute stats from delivery records.

        Completes an active campaign once nothing is pending. Callers hold
        campaign_lock(campaign_id).
        """
        campaign = await self.repository.recompute_stats(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")

        if campaign.status != CampaignStatus.ACTIVE or campaign.stats.pending > 0:
            return campaign

        completed = await self.repository.transition_status(
            campaign_id,
            [CampaignStatus.ACTIVE],
            CampaignStatus.COMPLETED,
            completed_at=self._now(),
        )
        if completed is None:
            return await self.get_campaign(campaign_id)

        await self._publish_event(
            OutreachEventType.CAMPAIGN_COMPLETED,
            CampaignCompletedEventData(
                campaign_id=campaign_id,
                audience_size=completed.audience_size,
                delivered=completed.stats.delivered,
                failed=completed.stats.failed,
                delivered_percentage=completed.stats.delivered_percentage,
                timestamp=self._now(),
            ).model_dump(mode="json"),
        )

        logger.info(
            f"Campaign completed: {campaign_id} "
            f"(delivered={completed.stats.delivered}, failed={completed.stats.failed})"
        )
        return completed

    async def list_due_campaigns(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> List[Campaign]:
        """Scheduled campaigns whose send time has come"""
        return await self.repository.list_due_campaigns(now or self._now(), limit=limit)

    # ====================
    # Stats & Delivery Records
    # ====================

    async def get_campaign_stats(self, campaign_id: str) -> CampaignStatsResponse:
        """Stats, per-status record breakdown and delivery duration"""
        campaign = await self.get_campaign(campaign_id)
        breakdown = await self.repository.count_records_by_status(campaign_id)

        return CampaignStatsResponse(
            campaign_id=campaign_id,
            status=campaign.status,
            audience_size=campaign.audience_size,
            stats=campaign.stats,
            status_breakdown=breakdown,
            sent_at=campaign.sent_at,
            completed_at=campaign.completed_at,
            delivery_duration_seconds=campaign.delivery_duration_seconds,
            error=campaign.error,
        )

    async def list_delivery_records(
        self,
        campaign_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[DeliveryRecord], int]:
        """Delivery log of a campaign"""
        await self.get_campaign(campaign_id)
        return await self.repository.list_delivery_records(
            campaign_id, status=status, limit=limit, offset=offset
        )

    # ====================
    # Helpers
    # ====================

    async def _require_segment(self, segment_id: str) -> None:
        segment = await self.segment_repository.get_segment(segment_id)
        if not segment:
            raise ValidationError(f"Segment not found: {segment_id}", "segment_id")

    async def _resolve_rule_tree(self, campaign: Campaign) -> RuleNode:
        """Rule tree of the campaign's audience source"""
        if campaign.segment_id:
            segment = await self.segment_repository.get_segment(campaign.segment_id)
            if not segment:
                raise ValidationError(f"Segment not found: {campaign.segment_id}", "segment_id")
            return segment.rule_tree
        if campaign.custom_rule_tree is None:
            raise ValidationError("Campaign has no audience source", "segment_id")
        return campaign.custom_rule_tree

    def _validate_name(self, name: Optional[str]) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Campaign name is required", "name")
        if len(name) > self.MAX_NAME_LENGTH:
            raise ValidationError(
                f"Campaign name must be at most {self.MAX_NAME_LENGTH} characters", "name"
            )
        return name

    def _validate_message(self, message: Optional[str]) -> str:
        if not message or not message.strip():
            raise ValidationError("Campaign message is required", "message")
        return message

    def _validate_state_transition(
        self, current: CampaignStatus, target: CampaignStatus
    ) -> None:
        """Validate state transition is allowed"""
        if target not in self.VALID_TRANSITIONS.get(current, []):
            raise InvalidCampaignStateError(
                f"Cannot transition from {current.value} to {target.value}",
                current,
            )

    async def _publish_event(self, event_type: OutreachEventType, data: Dict[str, Any]) -> None:
        """Publish event to event bus"""
        if not self.event_publisher:
            logger.debug(f"Event publisher not configured, skipping event: {event_type.value}")
            return

        try:
            await self.event_publisher.publish(event_type, data)
        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")


__all__ = ["CampaignService"]
