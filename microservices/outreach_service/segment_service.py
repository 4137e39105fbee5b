"""
Segment Service Business Logic

Named, reusable audience definitions backed by rule trees, plus rule
previews for authoring.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .events.models import OutreachEventType, SegmentCreatedEventData
from .models import (
    CampaignStatus,
    PreviewResponse,
    RuleNode,
    Segment,
    SegmentCreateRequest,
    SegmentPerformance,
    SegmentUpdateRequest,
)
from .protocols import (
    CampaignRepositoryProtocol,
    CustomerStoreProtocol,
    EventPublisherProtocol,
    SegmentInUseError,
    SegmentNotFoundError,
    SegmentRepositoryProtocol,
    ValidationError,
)
from .rule_evaluator import RuleEvaluator, parse_rule_tree, validate_rule_tree

logger = logging.getLogger(__name__)


class SegmentService:
    """Segment store business logic layer"""

    MAX_NAME_LENGTH = 255
    DEFAULT_PREVIEW_SAMPLE_SIZE = 5

    def __init__(
        self,
        repository: SegmentRepositoryProtocol,
        customer_store: CustomerStoreProtocol,
        campaign_repository: Optional[CampaignRepositoryProtocol] = None,
        evaluator: Optional[RuleEvaluator] = None,
        event_publisher: Optional[EventPublisherProtocol] = None,
        preview_sample_size: int = DEFAULT_PREVIEW_SAMPLE_SIZE,
    ):
        self.repository = repository
        self.customer_store = customer_store
        self.campaign_repository = campaign_repository
        self.evaluator = evaluator or RuleEvaluator()
        self.event_publisher = event_publisher
        self.preview_sample_size = preview_sample_size

    # ====================
    # Segment CRUD
    # ====================

    async def create_segment(
        self,
        request: SegmentCreateRequest,
        created_by: Optional[str] = None,
    ) -> Segment:
        """
        Create a segment.

        The name must be non-empty and the rule tree valid; the initial
        audience size is computed from the current customer data.

        Raises:
            ValidationError: empty name or invalid rule tree
            InvalidRuleError: unknown field or operator
        """
        name = self._validate_name(request.name)
        rule_tree = parse_rule_tree(request.rule_tree)
        validate_rule_tree(rule_tree)

        audience_size = await self.evaluator.count(rule_tree, self.customer_store)

        now = datetime.now(timezone.utc)
        segment = Segment(
            segment_id=f"seg_{uuid.uuid4().hex[:16]}",
            name=name,
            description=request.description,
            rule_tree=rule_tree,
            audience_size=audience_size,
            last_refreshed_at=now,
            tags=request.tags or [],
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        segment = await self.repository.save_segment(segment)

        await self._publish_event(
            OutreachEventType.SEGMENT_CREATED,
            SegmentCreatedEventData(
                segment_id=segment.segment_id,
                name=segment.name,
                audience_size=segment.audience_size,
                created_by=created_by,
                timestamp=now,
            ).model_dump(mode="json"),
        )

        logger.info(f"Segment created: {segment.segment_id} ({audience_size} customers)")
        return segment

    async def get_segment(self, segment_id: str) -> Segment:
        """Get segment by ID"""
        segment = await self.repository.get_segment(segment_id)
        if not segment:
            raise SegmentNotFoundError(f"Segment not found: {segment_id}")
        return segment

    async def list_segments(
        self,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Segment], int]:
        """List segments"""
        return await self.repository.list_segments(search=search, limit=limit, offset=offset)

    async def update_segment(self, segment_id: str, request: SegmentUpdateRequest) -> Segment:
        """
        Update a segment.

        A segment that a completed campaign was sent to is frozen so the
        campaign's audience definition stays reproducible.
        """
        segment = await self.get_segment(segment_id)
        await self._ensure_not_frozen(segment_id)

        updates: Dict[str, Any] = {}
        if request.name is not None:
            updates["name"] = self._validate_name(request.name)
        if request.description is not None:
            updates["description"] = request.description
        if request.tags is not None:
            updates["tags"] = request.tags
        if request.rule_tree is not None:
            rule_tree = parse_rule_tree(request.rule_tree)
            validate_rule_tree(rule_tree)
            updates["rule_tree"] = rule_tree
            updates["audience_size"] = await self.evaluator.count(rule_tree, self.customer_store)
            updates["last_refreshed_at"] = datetime.now(timezone.utc)

        if not updates:
            return segment

        frozen_by = [CampaignStatus.COMPLETED] if self.campaign_repository else None
        updated = await self.repository.update_segment(segment_id, updates, frozen_by=frozen_by)
        if not updated:
            # A campaign may have completed since the check above
            await self._ensure_not_frozen(segment_id)
            raise SegmentNotFoundError(f"Segment not found: {segment_id}")

        logger.info(f"Segment updated: {segment_id} ({', '.join(updates)})")
        return updated

    async def delete_segment(self, segment_id: str) -> bool:
        """Delete a segment no campaign references"""
        await self.get_segment(segment_id)

        if self.campaign_repository:
            in_use = await self.campaign_repository.count_campaigns_for_segment(segment_id)
            if in_use:
                raise SegmentInUseError(
                    f"Segment {segment_id} is referenced by {in_use} campaign(s)"
                )

        deleted = await self.repository.delete_segment(segment_id)
        if deleted:
            logger.info(f"Segment deleted: {segment_id}")
        return deleted

    async def refresh_segment(self, segment_id: str) -> Segment:
        """Recount the audience against current customer data"""
        segment = await self.get_segment(segment_id)
        audience_size = await self.evaluator.count(segment.rule_tree, self.customer_store)

        updated = await self.repository.update_segment(segment_id, {
            "audience_size": audience_size,
            "last_refreshed_at": datetime.now(timezone.utc),
        })
        if not updated:
            raise SegmentNotFoundError(f"Segment not found: {segment_id}")

        logger.info(f"Segment refreshed: {segment_id} ({segment.audience_size} -> {audience_size})")
        return updated

    # ====================
    # Preview
    # ====================

    async def preview_count(self, rule_tree: Union[RuleNode, Dict[str, Any], None]) -> int:
        """
        Number of customers a rule tree selects.

        Incomplete trees count zero; unknown fields or operators raise
        InvalidRuleError.
        """
        return await self.evaluator.count(rule_tree, self.customer_store)

    async def preview(
        self,
        rule_tree: Union[RuleNode, Dict[str, Any], None],
        sample_size: Optional[int] = None,
    ) -> PreviewResponse:
        """Count plus a small sample of matching customers"""
        result = await self.evaluator.evaluate(rule_tree, self.customer_store)
        size = self.preview_sample_size if sample_size is None else sample_size
        return PreviewResponse(count=result.count, sample=result.recipients[:size])

    # ====================
    # Performance
    # ====================

    async def get_segment_performance(self, segment_id: str) -> SegmentPerformance:
        """Delivery results across campaigns sent to this segment"""
        await self.get_segment(segment_id)

        performance = SegmentPerformance(segment_id=segment_id)
        if not self.campaign_repository:
            return performance

        campaigns, _ = await self.campaign_repository.list_campaigns(
            segment_id=segment_id, limit=1000, offset=0
        )

        rates = []
        for campaign in campaigns:
            performance.campaign_count += 1
            if campaign.status == CampaignStatus.COMPLETED:
                performance.completed_campaigns += 1
            if campaign.status in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED):
                continue
            performance.total_recipients += campaign.audience_size
            performance.total_delivered += campaign.stats.delivered
            performance.total_failed += campaign.stats.failed
            if campaign.audience_size:
                rates.append(campaign.stats.delivered_percentage)

        if rates:
            performance.average_delivery_rate = round(sum(rates) / len(rates), 2)
        return performance

    # ====================
    # Helpers
    # ====================

    async def _ensure_not_frozen(self, segment_id: str) -> None:
        if not self.campaign_repository:
            return
        completed = await self.campaign_repository.count_campaigns_for_segment(
            segment_id, [CampaignStatus.COMPLETED]
        )
        if completed:
            raise SegmentInUseError(
                f"Segment {segment_id} is referenced by {completed} completed campaign(s)"
            )

    def _validate_name(self, name: Optional[str]) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Segment name is required", "name")
        if len(name) > self.MAX_NAME_LENGTH:
            raise ValidationError(
                f"Segment name must be at most {self.MAX_NAME_LENGTH} characters", "name"
            )
        return name

    async def _publish_event(self, event_type: OutreachEventType, data: Dict[str, Any]) -> None:
        """Publish event to event bus"""
        if not self.event_publisher:
            logger.debug(f"Event publisher not configured, skipping event: {event_type.value}")
            return

        try:
            await self.event_publisher.publish(event_type, data)
        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")


__all__ = ["SegmentService"]
