"""
Component Tests for CampaignDispatcher

Fan-out with worker-pool backpressure, bounded retry, per-recipient
rejection, send timeouts and cancellation between batches.
"""

import gc
import httpx
import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.outreach.data_contract import CampaignStatus, DeliveryStatus
from core.config import BrokerConfig, DispatchConfig
from microservices.outreach_service.clients.broker_client import MessageBrokerClient
from microservices.outreach_service.dispatcher import CampaignDispatcher
from microservices.outreach_service.events.models import OutreachEventType


pytestmark = pytest.mark.component


class TestDispatchHappyPath:
    """Every recipient is submitted once"""

    @pytest.mark.asyncio
    async def test_all_recipients_submitted(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(25))
        campaign_id = activated.campaign.campaign_id

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        assert outcome.total == 25
        assert outcome.accepted == 25
        assert sorted(broker.accepted) == sorted(c.customer_id for c in activated.recipients)
        records = campaign_repository.records_for(campaign_id)
        assert len(records) == 25
        assert all(r.status == DeliveryStatus.PENDING and r.sent_at is not None for r in records)

        # Then: the campaign waits for receipts
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.stats.pending == 25

    @pytest.mark.asyncio
    async def test_messages_are_personalized(self, dispatcher, activate_campaign, campaign_repository, factory):
        customer = factory.make_customer(name="Hana Mori")
        activated = await activate_campaign([customer], message="Hello {{name}}")

        await dispatcher.dispatch(activated.campaign, activated.recipients)

        record = await campaign_repository.get_delivery_record(activated.campaign.campaign_id, customer.customer_id)
        assert record.message == "Hello Hana Mori"

    @pytest.mark.asyncio
    async def test_duplicate_recipients_sent_once(self, dispatcher, activate_campaign, broker, factory):
        activated = await activate_campaign(factory.make_customers(3))
        recipients = activated.recipients + activated.recipients[:2]

        outcome = await dispatcher.dispatch(activated.campaign, recipients)

        assert outcome.total == 3
        assert len(broker.accepted) == 3

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_concurrency(
        self, campaign_service, broker, activate_campaign, factory
    ):
        broker.delay = 0.01
        dispatcher = CampaignDispatcher(
            campaign_service,
            broker,
            config=DispatchConfig(batch_size=30, worker_pool_size=3, send_timeout_seconds=1,
                                  retry_backoff_seconds=0, retry_backoff_max_seconds=0),
        )
        activated = await activate_campaign(factory.make_customers(30))

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        assert outcome.accepted == 30
        assert broker.max_in_flight <= 3


class TestDispatchRejections:
    """Per-recipient broker rejections"""

    @pytest.mark.asyncio
    async def test_rejected_recipients_fail_individually(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(12))
        campaign_id = activated.campaign.campaign_id
        rejected = {activated.recipients[0].customer_id, activated.recipients[11].customer_id}
        broker.reject_ids = rejected

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        assert outcome.rejected == 2
        assert outcome.accepted == 10
        for rid in rejected:
            record = await campaign_repository.get_delivery_record(campaign_id, rid)
            assert record.status == DeliveryStatus.FAILED
            assert record.last_error == "invalid address"
            assert record.attempts == 1
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.stats.failed == 2
        assert campaign.stats.pending == 10

    @pytest.mark.asyncio
    async def test_all_rejected_completes_campaign(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(4))
        broker.reject_ids = {c.customer_id for c in activated.recipients}

        await dispatcher.dispatch(activated.campaign, activated.recipients)

        campaign = await campaign_repository.get_campaign(activated.campaign.campaign_id)
        assert campaign.status == CampaignStatus.COMPLETED
        assert campaign.stats.failed == 4
        assert campaign.stats.failed_percentage == 100.0


class TestDispatchRetry:
    """Transient broker failures"""

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(5))
        broker.transient_failures = 3

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        assert outcome.accepted == 5
        assert outcome.failed == 0
        assert len(broker.calls) == 8
        campaign = await campaign_repository.get_campaign(activated.campaign.campaign_id)
        assert campaign.status == CampaignStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_broker_down_fails_campaign_without_pending_records(
        self, dispatcher, activate_campaign, campaign_repository, broker, event_publisher, factory
    ):
        # Given: a broker that never answers successfully
        activated = await activate_campaign(factory.make_customers(25))
        campaign_id = activated.campaign.campaign_id
        broker.always_transient = True

        # When: dispatching
        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        # Then: three attempts on the first batch, then the campaign fails
        assert outcome.campaign_failed is True
        assert len(broker.calls) == 10 * 3
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.FAILED
        assert "Broker unavailable" in campaign.error
        statuses = campaign_repository.statuses_for(campaign_id)
        assert DeliveryStatus.PENDING not in statuses.values()
        assert campaign.stats.pending == 0
        assert campaign.stats.failed == 25
        assert len(event_publisher.get_events_by_type(OutreachEventType.CAMPAIGN_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_never_submitted_records_keep_zero_attempts(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(15))
        broker.always_transient = True

        await dispatcher.dispatch(activated.campaign, activated.recipients)

        attempts = sorted(r.attempts for r in campaign_repository.records_for(activated.campaign.campaign_id))
        assert attempts.count(0) == 5
        assert attempts.count(1) == 10

    @pytest.mark.asyncio
    async def test_late_outage_fails_remaining_recipients_only(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(20))
        campaign_id = activated.campaign.campaign_id

        async def go_down_after_first_batch(recipient_id):
            if len(broker.accepted) >= 10:
                broker.always_transient = True

        broker.on_send = go_down_after_first_batch

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        assert outcome.accepted == 10
        assert outcome.failed == 10
        assert outcome.campaign_failed is False
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.stats.failed == 10
        assert campaign.stats.pending == 10

    @pytest.mark.asyncio
    async def test_slow_send_times_out(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(4))
        slow = activated.recipients[0].customer_id
        broker.slow_ids = {slow}

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        assert outcome.accepted == 3
        assert outcome.failed == 1
        record = await campaign_repository.get_delivery_record(activated.campaign.campaign_id, slow)
        assert record.status == DeliveryStatus.FAILED
        assert "timed out" in record.last_error
        assert broker.calls.count(slow) == 3


class TestDispatchCancellation:
    """Cancellation is noticed between batches"""

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_batch(
        self, dispatcher, campaign_service, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(25))
        campaign_id = activated.campaign.campaign_id
        cancelled = []

        async def cancel_on_first_send(recipient_id):
            if not cancelled:
                cancelled.append(recipient_id)
                await campaign_service.cancel_campaign(campaign_id, reason="operator stop")

        broker.on_send = cancel_on_first_send

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        # Then: the in-flight batch finishes, nothing after it is sent
        assert outcome.cancelled is True
        assert len(broker.accepted) == 10
        assert outcome.failed == 15
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.CANCELLED
        unsent = [r for r in campaign_repository.records_for(campaign_id) if r.sent_at is None]
        assert len(unsent) == 15
        assert all(r.status == DeliveryStatus.FAILED for r in unsent)
        assert all(r.last_error == "campaign cancelled" and r.attempts == 0 for r in unsent)


class TestDispatchUnexpectedErrors:
    """Failures outside the broker's retry/reject contract"""

    @pytest.mark.asyncio
    async def test_unexpected_send_error_fails_one_recipient(
        self, dispatcher, activate_campaign, campaign_repository, broker, factory
    ):
        activated = await activate_campaign(factory.make_customers(5))
        campaign_id = activated.campaign.campaign_id
        bad = activated.recipients[2].customer_id

        async def malformed_reply(recipient_id):
            if recipient_id == bad:
                raise ValueError("unexpected reply shape")

        broker.on_send = malformed_reply

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        # Then: only that recipient fails and it is not resubmitted
        assert outcome.campaign_failed is False
        assert outcome.accepted == 4
        assert outcome.rejected == 1
        assert broker.calls.count(bad) == 1
        record = await campaign_repository.get_delivery_record(campaign_id, bad)
        assert record.status == DeliveryStatus.FAILED
        assert "unexpected reply shape" in record.last_error
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.stats.pending == 4

    @pytest.mark.asyncio
    async def test_plain_text_acceptance_from_http_broker(
        self, campaign_service, activate_campaign, campaign_repository, factory
    ):
        # Given: a broker that answers 202 with a plain-text body
        def handler(request):
            return httpx.Response(202, text="queued")

        client = MessageBrokerClient(BrokerConfig(url="http://broker.test", timeout=1.0))
        client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=client.base_url)
        dispatcher = CampaignDispatcher(
            campaign_service,
            client,
            config=DispatchConfig(batch_size=10, worker_pool_size=4, send_timeout_seconds=1,
                                  retry_backoff_seconds=0, retry_backoff_max_seconds=0),
        )
        activated = await activate_campaign(factory.make_customers(3))
        campaign_id = activated.campaign.campaign_id

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)
        await client.close()

        # Then: every send counts as accepted and awaits its receipt
        assert outcome.accepted == 3
        assert outcome.campaign_failed is False
        records = campaign_repository.records_for(campaign_id)
        assert all(r.status == DeliveryStatus.PENDING and r.sent_at is not None for r in records)
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.stats.pending == 3


class TestDispatchRecordCreationFailure:
    """Delivery records cannot be written"""

    @pytest.mark.asyncio
    async def test_failed_campaign_counts_whole_audience_failed(
        self, dispatcher, activate_campaign, campaign_repository, broker, event_publisher, factory, monkeypatch
    ):
        activated = await activate_campaign(factory.make_customers(4))
        campaign_id = activated.campaign.campaign_id

        async def storage_down(campaign_id, records):
            raise RuntimeError("db down")

        monkeypatch.setattr(campaign_repository, "create_delivery_records", storage_down)

        outcome = await dispatcher.dispatch(activated.campaign, activated.recipients)

        assert outcome.campaign_failed is True
        assert outcome.failed == 4
        assert broker.calls == []
        campaign = await campaign_repository.get_campaign(campaign_id)
        assert campaign.status == CampaignStatus.FAILED
        assert "db down" in campaign.error
        assert campaign.audience_size == 4
        assert campaign.stats.failed == 4
        assert campaign.stats.pending == 0
        assert campaign.stats.delivered + campaign.stats.failed + campaign.stats.pending == campaign.audience_size
        assert len(event_publisher.get_events_by_type(OutreachEventType.CAMPAIGN_FAILED)) == 1


class TestCampaignLocks:
    """Per-campaign locks live only while in use"""

    @pytest.mark.asyncio
    async def test_locks_released_after_campaigns_finish(
        self, dispatcher, campaign_service, activate_campaign, campaign_repository, broker, factory
    ):
        for _ in range(5):
            activated = await activate_campaign(factory.make_customers(2))
            broker.reject_ids = {c.customer_id for c in activated.recipients}
            await dispatcher.dispatch(activated.campaign, activated.recipients)
            stored = await campaign_repository.get_campaign(activated.campaign.campaign_id)
            assert stored.status == CampaignStatus.COMPLETED

        gc.collect()
        assert len(campaign_service._locks) == 0

    def test_lock_is_shared_while_held(self, campaign_service):
        lock = campaign_service.campaign_lock("cmp_1")

        assert campaign_service.campaign_lock("cmp_1") is lock
        assert campaign_service.campaign_lock("cmp_2") is not lock
