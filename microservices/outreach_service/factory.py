"""
Outreach Service Factory

Factory for creating outreach service instances with proper dependency injection.
"""

import logging
from typing import Optional

from core.config import OutreachConfig, get_settings
from core.nats_client import NATSEventBus
from core.postgres_client import PostgresClientWrapper

from .campaign_repository import CampaignRepository
from .campaign_service import CampaignService
from .clients.broker_client import MessageBrokerClient
from .customer_repository import CustomerRepository
from .delivery_reconciler import DeliveryReconciler
from .dispatcher import CampaignDispatcher
from .events.handlers import OutreachEventHandler
from .events.models import OutreachStreamConfig, OutreachSubscribedEventType
from .events.publishers import OutreachEventPublisher
from .rule_evaluator import RuleEvaluator
from .scheduler import CampaignScheduler
from .segment_repository import SegmentRepository
from .segment_service import SegmentService

logger = logging.getLogger(__name__)


class OutreachServiceFactory:
    """Factory for creating outreach service components"""

    def __init__(self, config: Optional[OutreachConfig] = None):
        self.config = config or get_settings()
        self._db: Optional[PostgresClientWrapper] = None
        self._segment_repository: Optional[SegmentRepository] = None
        self._campaign_repository: Optional[CampaignRepository] = None
        self._customer_repository: Optional[CustomerRepository] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._event_publisher: Optional[OutreachEventPublisher] = None
        self._event_handler: Optional[OutreachEventHandler] = None
        self._broker_client: Optional[MessageBrokerClient] = None
        self._segment_service: Optional[SegmentService] = None
        self._campaign_service: Optional[CampaignService] = None
        self._dispatcher: Optional[CampaignDispatcher] = None
        self._reconciler: Optional[DeliveryReconciler] = None
        self._scheduler: Optional[CampaignScheduler] = None

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Outreach Service components...")

        # Initialize repositories on one shared pool
        self._db = PostgresClientWrapper(
            self.config.service_name, config=self.config.infrastructure
        )
        await self._db.connect()
        self._segment_repository = SegmentRepository(self._db)
        self._campaign_repository = CampaignRepository(self._db)
        self._customer_repository = CustomerRepository(self._db)

        # Initialize NATS client
        try:
            self._nats_client = NATSEventBus(
                service_name=self.config.service_name,
                config=self.config.infrastructure,
                stream_name=OutreachStreamConfig.STREAM_NAME,
                subject_prefix="outreach",
            )
            await self._nats_client.connect()
            self._event_publisher = OutreachEventPublisher(self._nats_client)
            logger.info("NATS client connected")
        except Exception as e:
            logger.warning(f"NATS client initialization failed: {e}")
            self._nats_client = None
            self._event_publisher = None

        # Initialize broker client
        self._broker_client = MessageBrokerClient(self.config.broker)

        # Initialize services
        evaluator = RuleEvaluator()
        self._segment_service = SegmentService(
            repository=self._segment_repository,
            customer_store=self._customer_repository,
            campaign_repository=self._campaign_repository,
            evaluator=evaluator,
            event_publisher=self._event_publisher,
            preview_sample_size=self.config.preview_sample_size,
        )
        self._campaign_service = CampaignService(
            repository=self._campaign_repository,
            segment_repository=self._segment_repository,
            customer_store=self._customer_repository,
            evaluator=evaluator,
            event_publisher=self._event_publisher,
        )
        self._dispatcher = CampaignDispatcher(
            campaign_service=self._campaign_service,
            broker=self._broker_client,
            config=self.config.dispatch,
        )
        self._reconciler = DeliveryReconciler(
            campaign_service=self._campaign_service,
            dispatcher=self._dispatcher,
            event_publisher=self._event_publisher,
            max_delivery_attempts=self.config.dispatch.max_delivery_attempts,
        )
        self._scheduler = CampaignScheduler(
            campaign_service=self._campaign_service,
            dispatcher=self._dispatcher,
            config=self.config.scheduler,
        )

        # Initialize event handler
        self._event_handler = OutreachEventHandler(reconciler=self._reconciler)
        if self._nats_client:
            await self._nats_client.subscribe_to_events(
                OutreachSubscribedEventType.DELIVERY_RECEIPT.value,
                self._event_handler.handle_bus_event,
                durable=f"{OutreachStreamConfig.CONSUMER_PREFIX}-delivery-receipts",
            )

        if self.config.scheduler.enabled:
            await self._scheduler.start()

        logger.info("Outreach Service components initialized")

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Outreach Service components...")

        if self._scheduler:
            await self._scheduler.stop(drain=True)

        if self._nats_client:
            await self._nats_client.close()

        if self._broker_client:
            await self._broker_client.close()

        if self._db:
            await self._db.close()

        logger.info("Outreach Service components closed")

    async def health_check(self) -> dict:
        """Readiness of each dependency"""
        checks = {"database": False, "nats": False, "broker": False}
        if self._campaign_repository:
            checks["database"] = await self._campaign_repository.health_check()
        checks["nats"] = bool(self._nats_client and self._nats_client.is_connected)
        if self._broker_client:
            checks["broker"] = await self._broker_client.health_check()
        return checks

    @property
    def segment_service(self) -> SegmentService:
        """Get segment service"""
        if not self._segment_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._segment_service

    @property
    def campaign_service(self) -> CampaignService:
        """Get campaign service"""
        if not self._campaign_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._campaign_service

    @property
    def reconciler(self) -> DeliveryReconciler:
        """Get delivery reconciler"""
        if not self._reconciler:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._reconciler

    @property
    def scheduler(self) -> CampaignScheduler:
        """Get campaign scheduler"""
        if not self._scheduler:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._scheduler

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client


# Global factory instance
_factory: Optional[OutreachServiceFactory] = None


async def get_factory() -> OutreachServiceFactory:
    """Get or create factory instance"""
    global _factory
    if _factory is None:
        _factory = OutreachServiceFactory()
        await _factory.initialize()
    return _factory


async def close_factory() -> None:
    """Close factory instance"""
    global _factory
    if _factory:
        await _factory.close()
        _factory = None


__all__ = [
    "OutreachServiceFactory",
    "get_factory",
    "close_factory",
]
