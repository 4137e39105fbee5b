"""
Outreach Event Publishers

Publishes events to NATS JetStream.
"""

import logging
from typing import Any, Dict

from .models import OutreachEventType

logger = logging.getLogger(__name__)


class OutreachEventPublisher:
    """Publisher for outreach service events"""

    def __init__(self, nats_client=None):
        self.nats_client = nats_client
        self.source = "outreach_service"

    async def publish(
        self,
        event_type: OutreachEventType,
        data: Dict[str, Any],
    ) -> bool:
        """
        Publish an event to NATS.

        The event bus wraps the payload in the standard envelope and uses the
        event type as the subject.

        Args:
            event_type: The event type enum
            data: Event data payload

        Returns:
            True if published successfully, False otherwise
        """
        event_name = event_type.value if isinstance(event_type, OutreachEventType) else str(event_type)

        if not self.nats_client:
            logger.debug(f"NATS client not configured, skipping publish: {event_name}")
            return False

        try:
            published = await self.nats_client.publish(event_name, data)
            logger.debug(f"Published event: {event_name}")
            return bool(published)

        except Exception as e:
            logger.error(f"Failed to publish event {event_name}: {e}")
            return False


__all__ = ["OutreachEventPublisher"]
