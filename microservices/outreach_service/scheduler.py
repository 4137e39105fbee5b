"""
Campaign Scheduler

Polls for due campaigns (status scheduled, scheduled_at <= now), claims each
one and hands claimed campaigns to the dispatcher as background tasks.
"""

import asyncio
import logging
from typing import List, Optional, Set

from core.config import SchedulerConfig

from .models import ActivatedCampaign
from .protocols import AudienceResolutionError

logger = logging.getLogger(__name__)


class CampaignScheduler:
    """Periodic due-campaign poller"""

    def __init__(
        self,
        campaign_service,
        dispatcher,
        config: Optional[SchedulerConfig] = None,
    ):
        self.campaign_service = campaign_service
        self.dispatcher = dispatcher
        self.config = config or SchedulerConfig()

        self._slots = asyncio.Semaphore(max(1, self.config.max_concurrent_dispatches))
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_dispatches(self) -> int:
        return len(self._tasks)

    async def poll_once(self) -> List[str]:
        """
        Claim every due campaign and start its dispatch.

        Returns the IDs this poll claimed. A lost claim is skipped, and an
        error on one campaign never stops the rest of the poll.
        """
        due = await self.campaign_service.list_due_campaigns()
        if not due:
            return []

        claimed: List[str] = []
        for campaign in due:
            campaign_id = campaign.campaign_id

            # Wait for a dispatch slot before claiming so nothing claimed sits idle
            await self._slots.acquire()
            try:
                activated = await self.campaign_service.activate_scheduled_campaign(campaign_id)
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except AudienceResolutionError as e:
                self._slots.release()
                logger.warning(f"Campaign {campaign_id} failed during activation: {e}")
                continue
            except Exception as e:
                self._slots.release()
                logger.error(f"Error activating campaign {campaign_id}: {e}", exc_info=True)
                continue

            if activated is None:
                self._slots.release()
                continue

            claimed.append(campaign_id)
            task = asyncio.create_task(self._run_dispatch(activated))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if claimed:
            logger.info(f"Scheduler claimed {len(claimed)} of {len(due)} due campaigns")
        return claimed

    async def _run_dispatch(self, activated: ActivatedCampaign) -> None:
        campaign_id = activated.campaign.campaign_id
        try:
            await self.dispatcher.dispatch(activated.campaign, activated.recipients)
        except Exception as e:
            logger.error(f"Dispatch crashed for campaign {campaign_id}: {e}", exc_info=True)
            try:
                await self.campaign_service.fail_campaign(campaign_id, f"Dispatch crashed: {e}")
            except Exception as fail_error:
                logger.error(f"Could not mark campaign {campaign_id} failed: {fail_error}")
        finally:
            self._slots.release()

    async def drain(self) -> None:
        """Wait for in-flight dispatches to finish"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ====================
    # Loop
    # ====================

    async def start(self) -> None:
        """Start the poll loop"""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(f"Campaign scheduler started (interval={self.config.poll_interval_seconds}s)")

    async def stop(self, drain: bool = True) -> None:
        """Stop polling; optionally wait for in-flight dispatches"""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if drain:
            await self.drain()
        logger.info("Campaign scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Scheduler poll failed: {e}", exc_info=True)
            await asyncio.sleep(self.config.poll_interval_seconds)


__all__ = ["CampaignScheduler"]
