"""
NATS JetStream Client for Python Microservices

Provides event-driven communication between services over nats-py.
Events travel in a JSON envelope (id, type, source, timestamp, data) on
JetStream subjects so consumers get at-least-once delivery.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import nats
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.js import JetStreamContext

from core.config import InfraConfig, get_settings

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class Event:
    """Event envelope"""

    def __init__(
        self,
        event_type: str,
        source: str,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type
        self.source = source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id") or str(uuid.uuid4())
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


EventHandler = Callable[[Event], Awaitable[None]]


class NATSEventBus:
    """
    NATS JetStream event bus.

    One stream per service subject prefix (e.g. "outreach.>" -> OUTREACH).
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
        stream_name: Optional[str] = None,
        subject_prefix: Optional[str] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (event source and client name)
            config: Infrastructure config (defaults to global settings)
            stream_name: JetStream stream owning this service's subjects
            subject_prefix: Subject prefix captured by the stream
        """
        self.service_name = service_name
        self.config = config or get_settings().infrastructure
        self.servers = self.config.nats_servers
        self.subject_prefix = subject_prefix or service_name.split("_")[0]
        self.stream_name = stream_name or self.subject_prefix.upper()

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._subscriptions: Dict[str, Any] = {}
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {self.servers}")

    async def connect(self):
        """Connect to NATS and make sure the service stream exists"""
        try:
            self._nc = await nats.connect(servers=[self.servers], name=self.service_name)
            self._js = self._nc.jetstream()
            await self.create_stream(self.stream_name, [f"{self.subject_prefix}.>"])
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def create_stream(self, name: str, subjects: List[str]) -> bool:
        """Create a JetStream stream (idempotent)"""
        if not self._js:
            return False
        try:
            await self._js.add_stream(name=name, subjects=subjects)
            logger.debug(f"Stream '{name}' ready for {subjects}")
            return True
        except Exception as e:
            logger.debug(f"Stream creation note: {e}")
            return False

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to NATS JetStream.

        The event type doubles as the subject (e.g. "outreach.campaign.completed").
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            subject = event.subject or event.type
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()
            ack = await self._js.publish(subject, data)
            logger.info(f"Published event {event.type} [{event.id}] to stream {ack.stream}, seq={ack.seq}")
            return True
        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def publish(self, event_type: str, data: Dict[str, Any]) -> bool:
        """Wrap payload in an envelope and publish it"""
        return await self.publish_event(Event(event_type, self.service_name, data))

    async def subscribe_to_events(
        self, pattern: str, handler: EventHandler, durable: Optional[str] = None
    ) -> Optional[str]:
        """
        Subscribe to events with a pattern using a durable JetStream consumer.

        Messages are acked after the handler returns; a handler error leaves
        the message unacked so JetStream redelivers it.
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return None

        async def _on_message(msg: Msg):
            try:
                payload = json.loads(msg.data.decode())
                if "type" in payload and "data" in payload:
                    event = Event.from_dict(payload)
                else:
                    event = Event(msg.subject, "external", payload, subject=msg.subject)
                await handler(event)
                await msg.ack()
            except Exception as e:
                logger.error(f"Error processing message on {msg.subject}: {e}")
                await msg.nak()

        try:
            durable_name = durable or f"{self.service_name}-{pattern}".replace(".", "-").replace("*", "all").replace(">", "all")
            sub = await self._js.subscribe(pattern, durable=durable_name, cb=_on_message, manual_ack=True)
            self._subscriptions[pattern] = sub
            logger.info(f"Subscribed to {pattern} (JetStream consumer {durable_name})")
            return durable_name
        except Exception as e:
            logger.error(f"Error subscribing to events: {e}")
            return None

    async def unsubscribe(self, pattern: str) -> bool:
        """Unsubscribe from a pattern"""
        sub = self._subscriptions.pop(pattern, None)
        if sub is None:
            return False
        await sub.unsubscribe()
        logger.info(f"Unsubscribed from {pattern}")
        return True

    async def close(self):
        """Close NATS connection"""
        for pattern in list(self._subscriptions.keys()):
            try:
                await self.unsubscribe(pattern)
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from {pattern}: {e}")

        if self._nc:
            await self._nc.drain()
            self._nc = None
            self._js = None

        self._is_connected = False
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._is_connected
