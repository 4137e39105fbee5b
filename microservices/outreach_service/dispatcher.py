"""
Campaign Dispatcher

Fans a claimed campaign out to the message broker:

- every recipient gets a Pending delivery record before any send
- sends run concurrently behind a shared worker pool, each with a timeout
- transient broker failures are retried with exponential backoff
- campaign status is re-read before every batch so cancellation is prompt

Delivery confirmation is not awaited here; it arrives through the
DeliveryReconciler.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import DispatchConfig

from .models import (
    Campaign,
    CampaignStats,
    CampaignStatus,
    Customer,
    DeliveryRecord,
    DispatchOutcome,
)
from .protocols import (
    MessageBrokerProtocol,
    RecipientDeliveryError,
    TransientBrokerError,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r'\{\{\s*(\w+(?:\.\w+)*)\s*\}\}')

# Send outcome kinds
ACCEPTED = "accepted"
REJECTED = "rejected"
TRANSIENT = "transient"


def render_message(template: str, customer: Customer) -> str:
    """
    Substitute {{field}} placeholders with customer attributes.

    {{name}} falls back to "Customer"; unknown or empty attributes render as
    an empty string. A leading "customer." prefix is accepted.
    """
    if not template:
        return template

    def replace_var(match):
        key = match.group(1)
        if key.startswith("customer."):
            key = key[len("customer."):]

        value = getattr(customer, key, None) if "." not in key else None
        if key == "name":
            return value or "Customer"
        if value is None or value == "":
            return ""
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        if isinstance(value, datetime):
            return value.date().isoformat()
        return str(value)

    return _PLACEHOLDER.sub(replace_var, template)


class CampaignDispatcher:
    """Submits a campaign's messages to the broker and tracks per-recipient outcome"""

    def __init__(
        self,
        campaign_service,
        broker: MessageBrokerProtocol,
        config: Optional[DispatchConfig] = None,
    ):
        self.campaign_service = campaign_service
        self.repository = campaign_service.repository
        self.broker = broker
        self.config = config or DispatchConfig()
        # Shared across all dispatches so concurrent campaigns respect one broker limit
        self._workers = asyncio.Semaphore(self.config.worker_pool_size)

    async def dispatch(self, campaign: Campaign, recipients: Sequence[Customer]) -> DispatchOutcome:
        """
        Send the campaign message to every recipient.

        Rejected recipients are failed immediately. If the broker stays
        unavailable through every retry before any send of this dispatch was
        accepted, the campaign fails and no record is left Pending.
        """
        campaign_id = campaign.campaign_id

        messages: Dict[str, str] = {}
        for customer in recipients:
            if customer.customer_id not in messages:
                messages[customer.customer_id] = render_message(campaign.message, customer)

        outcome = DispatchOutcome(campaign_id=campaign_id, total=len(messages))
        logger.info(f"Dispatching campaign {campaign_id} to {outcome.total} recipients")

        try:
            await self.repository.create_delivery_records(
                campaign_id,
                [
                    DeliveryRecord(campaign_id=campaign_id, recipient_id=rid, message=msg)
                    for rid, msg in messages.items()
                ],
            )
        except Exception as e:
            error = f"Could not create delivery records: {e}"
            logger.error(f"Campaign {campaign_id}: {error}", exc_info=True)
            await self._fail_without_records(campaign, error, outcome)
            return outcome

        try:
            recipient_ids = list(messages)
            batch_size = max(1, self.config.batch_size)
            ever_accepted = False

            for start in range(0, len(recipient_ids), batch_size):
                status = await self.repository.get_campaign_status(campaign_id)
                if status != CampaignStatus.ACTIVE:
                    await self._stop_unsent(campaign_id, recipient_ids[start:], status, outcome)
                    break

                batch = recipient_ids[start:start + batch_size]
                accepted, unresolved = await self._send_batch(campaign_id, batch, messages, outcome)
                ever_accepted = ever_accepted or bool(accepted)

                if not unresolved:
                    continue

                last_error = next(iter(unresolved.values()))
                if not ever_accepted:
                    error = (
                        f"Broker unavailable after {self.config.max_batch_attempts} attempts: {last_error}"
                    )
                    await self._fail_dispatch(campaign_id, list(unresolved), error, outcome)
                    return outcome

                async with self.campaign_service.campaign_lock(campaign_id):
                    for rid, error in unresolved.items():
                        await self.repository.fail_pending_records(campaign_id, [rid], error)
                outcome.failed += len(unresolved)
                logger.warning(
                    f"Campaign {campaign_id}: {len(unresolved)} recipients failed after "
                    f"{self.config.max_batch_attempts} attempts: {last_error}"
                )

        except Exception as e:
            error = f"Dispatch aborted: {e}"
            logger.error(f"Campaign {campaign_id}: {error}", exc_info=True)
            await self._fail_dispatch(campaign_id, [], error, outcome)
            return outcome

        async with self.campaign_service.campaign_lock(campaign_id):
            await self.campaign_service.refresh_stats(campaign_id)

        logger.info(
            f"Dispatch finished for campaign {campaign_id}: accepted={outcome.accepted}, "
            f"rejected={outcome.rejected}, failed={outcome.failed}, cancelled={outcome.cancelled}"
        )
        return outcome

    async def redeliver(self, campaign: Campaign, record: DeliveryRecord) -> bool:
        """
        Resubmit one delivery record as a new attempt on the same record.

        Returns True if the broker accepted the send.
        """
        message = record.message or campaign.message
        kind, detail = await self._send_one(campaign.campaign_id, record.recipient_id, message)

        if kind == ACCEPTED:
            await self.repository.mark_records_sent(
                campaign.campaign_id, [record.recipient_id], datetime.now(timezone.utc)
            )
            logger.info(f"Redelivered {campaign.campaign_id}/{record.recipient_id}")
            return True

        logger.warning(f"Redelivery of {campaign.campaign_id}/{record.recipient_id} failed: {detail}")
        return False

    # ====================
    # Sending
    # ====================

    async def _send_batch(
        self,
        campaign_id: str,
        batch: List[str],
        messages: Dict[str, str],
        outcome: DispatchOutcome,
    ) -> Tuple[List[str], Dict[str, str]]:
        """
        Send one batch, resubmitting transient failures with backoff.

        Returns accepted recipient IDs and the recipients still unresolved
        when retries ran out, with their last error.
        """
        accepted: List[str] = []
        remaining = list(batch)
        transient: Dict[str, str] = {}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.config.max_batch_attempts)),
                wait=wait_exponential(
                    multiplier=self.config.retry_backoff_seconds,
                    max=self.config.retry_backoff_max_seconds,
                ),
                retry=retry_if_exception_type(TransientBrokerError),
                reraise=True,
            ):
                with attempt:
                    results = await asyncio.gather(
                        *(self._send_one(campaign_id, rid, messages[rid]) for rid in remaining)
                    )

                    now = datetime.now(timezone.utc)
                    sent: List[str] = []
                    rejected: Dict[str, str] = {}
                    transient = {}
                    for rid, (kind, detail) in zip(remaining, results):
                        if kind == ACCEPTED:
                            sent.append(rid)
                        elif kind == REJECTED:
                            rejected[rid] = detail
                        else:
                            transient[rid] = detail

                    if sent:
                        await self.repository.mark_records_sent(campaign_id, sent, now)
                        accepted.extend(sent)
                        outcome.accepted += len(sent)

                    if rejected:
                        async with self.campaign_service.campaign_lock(campaign_id):
                            for rid, error in rejected.items():
                                await self.repository.fail_pending_records(campaign_id, [rid], error)
                        outcome.rejected += len(rejected)
                        logger.info(f"Campaign {campaign_id}: broker rejected {len(rejected)} recipients")

                    remaining = list(transient)
                    if transient:
                        logger.warning(
                            f"Campaign {campaign_id}: {len(transient)} sends failed transiently "
                            f"(attempt {attempt.retry_state.attempt_number})"
                        )
                        raise TransientBrokerError(next(iter(transient.values())))
        except TransientBrokerError:
            return accepted, transient

        return accepted, {}

    async def _send_one(self, campaign_id: str, recipient_id: str, message: str) -> Tuple[str, Optional[str]]:
        """Submit one message through the worker pool; classify the result"""
        async with self._workers:
            try:
                result = await asyncio.wait_for(
                    self.broker.send(recipient_id, message, campaign_id=campaign_id),
                    timeout=self.config.send_timeout_seconds,
                )
            except asyncio.TimeoutError:
                return TRANSIENT, f"Send timed out after {self.config.send_timeout_seconds}s"
            except TransientBrokerError as e:
                return TRANSIENT, str(e)
            except RecipientDeliveryError as e:
                return REJECTED, str(e)
            except Exception as e:
                # Outcome unknown; failing the recipient avoids a duplicate send on retry
                logger.error(f"Send to {campaign_id}/{recipient_id} raised: {e}", exc_info=True)
                return REJECTED, f"Send error: {e}"

        if result.accepted:
            return ACCEPTED, result.message_id
        return REJECTED, result.error or "Rejected by broker"

    # ====================
    # Stopping
    # ====================

    async def _stop_unsent(
        self,
        campaign_id: str,
        unsent: List[str],
        status: Optional[CampaignStatus],
        outcome: DispatchOutcome,
    ) -> None:
        """Fail records that were never submitted because the campaign left active"""
        reason = "campaign cancelled" if status == CampaignStatus.CANCELLED else (
            f"campaign {status.value if status else 'missing'}"
        )
        async with self.campaign_service.campaign_lock(campaign_id):
            stopped = await self.repository.fail_pending_records(
                campaign_id, unsent, reason, attempted=False
            )
        outcome.cancelled = status == CampaignStatus.CANCELLED
        outcome.failed += stopped
        logger.info(f"Campaign {campaign_id}: stopped dispatch, {stopped} unsent records failed ({reason})")

    async def _fail_dispatch(
        self,
        campaign_id: str,
        attempted: List[str],
        error: str,
        outcome: DispatchOutcome,
    ) -> None:
        """Systemic failure: fail the campaign and every record still pending"""
        await self.campaign_service.fail_campaign(campaign_id, error)

        async with self.campaign_service.campaign_lock(campaign_id):
            failed = await self.repository.fail_pending_records(campaign_id, attempted, error)
            failed += await self.repository.fail_pending_records(
                campaign_id, None, error, attempted=False
            )
            await self.campaign_service.refresh_stats(campaign_id)

        outcome.failed += failed
        outcome.campaign_failed = True
        outcome.error = error

    async def _fail_without_records(
        self,
        campaign: Campaign,
        error: str,
        outcome: DispatchOutcome,
    ) -> None:
        """
        Fail a campaign whose delivery records could not be written.

        There are no records to recompute from, so the whole audience is
        counted failed directly and stats still add up to audience_size.
        """
        audience_size = campaign.audience_size or outcome.total
        await self.campaign_service.fail_campaign(
            campaign.campaign_id,
            error,
            stats=CampaignStats(failed=audience_size, audience_size=audience_size),
        )
        outcome.failed = outcome.total
        outcome.campaign_failed = True
        outcome.error = error


__all__ = ["CampaignDispatcher", "render_message"]
