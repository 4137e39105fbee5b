"""
Message Broker Client

Client for submitting rendered campaign messages to the message broker.
"""

import logging
from typing import Optional

import httpx

from core.config import BrokerConfig, get_settings

from ..models import SendResult
from ..protocols import TransientBrokerError

logger = logging.getLogger(__name__)


class MessageBrokerClient:
    """
    HTTP client for the message broker.

    2xx means the broker accepted the send, 4xx is a rejection of this
    recipient, and 5xx, 429, connection errors and timeouts raise
    TransientBrokerError so the dispatcher can retry.
    """

    def __init__(self, config: Optional[BrokerConfig] = None):
        if config is None:
            config = get_settings().broker

        self.base_url = config.url.rstrip("/")
        self.timeout = config.timeout
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def send(
        self,
        recipient_id: str,
        message: str,
        campaign_id: Optional[str] = None,
    ) -> SendResult:
        """
        Submit one message to the broker.

        Args:
            recipient_id: Customer the message is addressed to
            message: Rendered message body
            campaign_id: Owning campaign, echoed back on the delivery receipt

        Returns:
            SendResult with the broker's message_id when accepted
        """
        request_data = {
            "recipient_id": recipient_id,
            "message": message,
            "campaign_id": campaign_id,
        }

        try:
            response = await self._get_client().post("/api/v1/messages", json=request_data)
        except httpx.TimeoutException as e:
            raise TransientBrokerError(f"Broker timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientBrokerError(f"Broker unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientBrokerError(
                f"Broker returned {response.status_code}: {response.text}"
            )

        if response.status_code >= 400:
            logger.debug(f"Broker rejected {recipient_id}: {response.status_code} {response.text}")
            return SendResult(accepted=False, error=response.text or f"HTTP {response.status_code}")

        # Any 2xx is an acceptance; the body is optional and may not be JSON
        try:
            body = response.json() if response.content else None
        except ValueError:
            logger.debug(f"Broker accepted {recipient_id} with a non-JSON body: {response.text[:80]}")
            body = None

        message_id = body.get("message_id") if isinstance(body, dict) else None
        return SendResult(accepted=True, message_id=message_id)

    async def health_check(self) -> bool:
        """Check broker reachability"""
        try:
            response = await self._get_client().get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Broker health check failed: {e}")
            return False

    async def close(self):
        """Close the underlying HTTP client"""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["MessageBrokerClient"]
