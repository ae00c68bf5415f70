"""Generic HTTP webhook delivery."""

from typing import Any, Dict, Optional

import httpx

from security_pipeline.config import settings
from security_pipeline.observability import get_logger

logger = get_logger(__name__)


class WebhookSender:
    """POST ``notification.webhook.send`` payloads to the URL they name."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.transport = transport

    async def send(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver one webhook notification in a single attempt.

        Raises:
            ValueError: If the notification has no URL
            httpx.HTTPError: If the endpoint rejects the request
        """
        url = notification.get("url")
        if not url:
            raise ValueError("Webhook notification has no url")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(url, json=notification.get("payload", {}))
            response.raise_for_status()

        logger.info(f"Webhook delivered to {url} ({response.status_code})")
        return {"success": True, "destination": "webhook", "status_code": response.status_code}

    async def __call__(self, topic: str, payload: Dict[str, Any]) -> None:
        await self.send(payload)
