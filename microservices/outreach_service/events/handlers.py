"""
Outreach Event Handlers

Handles incoming events: delivery receipts pushed by the message broker.
"""

import logging
from typing import Any, Dict

from pydantic import ValidationError as PydanticValidationError

from .models import DeliveryReceiptEventData, OutreachSubscribedEventType
from ..models import DeliveryStatus
from ..protocols import DeliveryRecordNotFoundError

logger = logging.getLogger(__name__)


class OutreachEventHandler:
    """Handler for outreach service subscribed events"""

    def __init__(self, reconciler=None):
        self.reconciler = reconciler

    async def handle_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """
        Route event to appropriate handler.

        Malformed or unknown receipts are logged and dropped. Any other error
        propagates so the bus leaves the message unacked for redelivery.
        """
        handlers = {
            OutreachSubscribedEventType.DELIVERY_RECEIPT.value: self.handle_delivery_receipt,
        }

        handler = handlers.get(event_type)
        if handler:
            await handler(data)
        else:
            logger.debug(f"No handler for event type: {event_type}")

    async def handle_delivery_receipt(self, data: Dict[str, Any]) -> None:
        """Apply one broker receipt through the reconciler"""
        if not self.reconciler:
            logger.warning("Delivery receipt received but no reconciler configured")
            return

        try:
            receipt = DeliveryReceiptEventData(**data)
            outcome = DeliveryStatus(receipt.status)
        except (PydanticValidationError, ValueError) as e:
            logger.warning(f"Dropping malformed delivery receipt: {e}")
            return

        if not outcome.is_terminal:
            logger.warning(
                f"Dropping non-terminal receipt for {receipt.campaign_id}/{receipt.recipient_id}: {receipt.status}"
            )
            return

        try:
            await self.reconciler.on_receipt(
                receipt.campaign_id,
                receipt.recipient_id,
                outcome,
                error=receipt.error_message,
            )
        except DeliveryRecordNotFoundError as e:
            logger.warning(f"Dropping receipt with no delivery record: {e}")

    async def handle_bus_event(self, event) -> None:
        """Adapter for NATSEventBus subscriptions"""
        await self.handle_event(event.type, event.data)


__all__ = ["OutreachEventHandler"]
