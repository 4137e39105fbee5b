"""
Delivery Reconciler

Applies asynchronous delivery receipts from the message broker to delivery
records and keeps campaign stats in step with them.

Receipts are delivered at least once and possibly out of order, so:
- the same terminal outcome applied twice is a no-op
- a conflicting outcome on a terminal record overwrites it (latest wins)
- record update and stats recompute for one campaign never interleave
"""

import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .events.models import DeliveryFailedEventData, OutreachEventType
from .models import CampaignStatus, DeliveryRecord, DeliveryStatus
from .protocols import (
    DeliveryRecordNotFoundError,
    EventPublisherProtocol,
    ValidationError,
)

logger = logging.getLogger(__name__)

FailureListener = Callable[[DeliveryRecord], Any]


class DeliveryReconciler:
    """Receipt handling and per-campaign stats reconciliation"""

    def __init__(
        self,
        campaign_service,
        dispatcher=None,
        event_publisher: Optional[EventPublisherProtocol] = None,
        max_delivery_attempts: int = 1,
    ):
        self.campaign_service = campaign_service
        self.repository = campaign_service.repository
        self.dispatcher = dispatcher
        self.event_publisher = event_publisher
        self.max_delivery_attempts = max(1, max_delivery_attempts)
        self._failure_listeners: List[FailureListener] = []

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Register a callback for deliveries that failed for good"""
        self._failure_listeners.append(listener)

    async def on_receipt(
        self,
        campaign_id: str,
        recipient_id: str,
        outcome: Union[DeliveryStatus, str],
        error: Optional[str] = None,
    ) -> DeliveryRecord:
        """
        Apply one delivery receipt.

        Raises:
            ValidationError: outcome is not delivered or failed
            DeliveryRecordNotFoundError: no record for the pair
        """
        try:
            outcome = DeliveryStatus(outcome)
        except ValueError:
            raise ValidationError(f"Unknown delivery outcome: {outcome}", "status")
        if not outcome.is_terminal:
            raise ValidationError("Receipt outcome must be delivered or failed", "status")

        retry_record: Optional[DeliveryRecord] = None
        final_failure: Optional[DeliveryRecord] = None

        async with self.campaign_service.campaign_lock(campaign_id):
            record = await self.repository.get_delivery_record(campaign_id, recipient_id)
            if record is None:
                raise DeliveryRecordNotFoundError(
                    f"No delivery record for campaign {campaign_id}, recipient {recipient_id}"
                )

            if record.status == outcome:
                logger.debug(f"Duplicate {outcome.value} receipt for {campaign_id}/{recipient_id}, ignoring")
                return record

            if record.status.is_terminal:
                logger.warning(
                    f"Conflicting receipt for {campaign_id}/{recipient_id}: "
                    f"{record.status.value} -> {outcome.value}, keeping latest"
                )

            attempts = record.attempts + 1
            if self._should_redeliver(record, outcome, attempts):
                record = await self.repository.update_delivery_record(
                    campaign_id, recipient_id, attempts=attempts, last_error=error
                )
                retry_record = record
            else:
                record = await self._apply_outcome(campaign_id, recipient_id, outcome, attempts, error)
                await self.campaign_service.refresh_stats(campaign_id)
                if outcome == DeliveryStatus.FAILED:
                    final_failure = record

        if retry_record is not None:
            record = await self._redeliver(campaign_id, retry_record, error)
            if record.status == DeliveryStatus.FAILED:
                final_failure = record

        if final_failure is not None:
            await self._notify_failure(final_failure)

        return record

    def _should_redeliver(self, record: DeliveryRecord, outcome: DeliveryStatus, attempts: int) -> bool:
        return (
            outcome == DeliveryStatus.FAILED
            and record.status == DeliveryStatus.PENDING
            and self.dispatcher is not None
            and attempts < self.max_delivery_attempts
        )

    async def _apply_outcome(
        self,
        campaign_id: str,
        recipient_id: str,
        outcome: DeliveryStatus,
        attempts: int,
        error: Optional[str],
    ) -> DeliveryRecord:
        fields: Dict[str, Any] = {"status": outcome, "attempts": attempts}
        if outcome == DeliveryStatus.DELIVERED:
            fields["delivered_at"] = datetime.now(timezone.utc)
            fields["last_error"] = None
        else:
            fields["last_error"] = error or "Delivery failed"
        return await self.repository.update_delivery_record(campaign_id, recipient_id, **fields)

    async def _redeliver(
        self, campaign_id: str, record: DeliveryRecord, error: Optional[str]
    ) -> DeliveryRecord:
        """Resubmit outside the campaign lock; finalize the failure if the resend is refused"""
        campaign = await self.campaign_service.get_campaign(campaign_id)

        if campaign.status == CampaignStatus.ACTIVE:
            if await self.dispatcher.redeliver(campaign, record):
                return record

        async with self.campaign_service.campaign_lock(campaign_id):
            current = await self.repository.get_delivery_record(campaign_id, record.recipient_id)
            if current is None or current.status != DeliveryStatus.PENDING:
                return current or record
            failed = await self.repository.update_delivery_record(
                campaign_id,
                record.recipient_id,
                status=DeliveryStatus.FAILED,
                last_error=error or "Delivery failed",
            )
            await self.campaign_service.refresh_stats(campaign_id)
            return failed

    async def _notify_failure(self, record: DeliveryRecord) -> None:
        """Tell listeners and the event bus about a final delivery failure"""
        for listener in self._failure_listeners:
            try:
                result = listener(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Delivery failure listener raised: {e}")

        if not self.event_publisher:
            return

        try:
            await self.event_publisher.publish(
                OutreachEventType.DELIVERY_FAILED,
                DeliveryFailedEventData(
                    campaign_id=record.campaign_id,
                    recipient_id=record.recipient_id,
                    attempts=record.attempts,
                    error=record.last_error,
                    timestamp=datetime.now(timezone.utc),
                ).model_dump(mode="json"),
            )
        except Exception as e:
            logger.error(f"Failed to publish event {OutreachEventType.DELIVERY_FAILED.value}: {e}")


__all__ = ["DeliveryReconciler"]
