"""Slack integration for sending alerts."""

from typing import Any, Dict, List, Optional

import httpx

from security_pipeline.config import settings
from security_pipeline.database.models import utcnow
from security_pipeline.observability import get_logger

logger = get_logger(__name__)


class SlackSender:
    """Deliver ``notification.slack.send`` payloads to a Slack webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize Slack sender.

        Args:
            webhook_url: Slack webhook URL
            transport: Optional httpx transport (used by tests)
        """
        self.webhook_url = webhook_url or settings.slack_webhook_url
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "SlackSender":
        """Async context manager entry."""
        self.client = httpx.AsyncClient(timeout=30.0, transport=self.transport)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _format_blocks(self, message: str) -> List[Dict[str, Any]]:
        """Format message as Slack blocks.

        Args:
            message: Alert text (Slack mrkdwn)

        Returns:
            List of Slack blocks
        """
        return [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": message},
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"⏰ {utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')}",
                    }
                ],
            },
        ]

    def build_request(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        """Translate a bus notification into a Slack webhook body."""
        return {
            "channel": notification.get("channel", settings.slack_default_channel),
            "text": notification.get("message", ""),
            "attachments": [
                {
                    "color": notification.get("color", "#888888"),
                    "blocks": self._format_blocks(notification.get("message", "")),
                }
            ],
        }

    async def send(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        """Send a notification to Slack in a single attempt.

        Args:
            notification: ``{channel, message, color}`` payload

        Returns:
            Response information

        Raises:
            ValueError: If webhook URL not configured
            httpx.HTTPError: If API request fails
        """
        if not self.webhook_url:
            raise ValueError("Slack webhook URL not configured")

        if not self.client:
            raise RuntimeError("Client not initialized. Use async context manager.")

        channel = notification.get("channel", settings.slack_default_channel)
        logger.info(f"Sending alert to Slack channel {channel}")

        try:
            response = await self.client.post(
                self.webhook_url,
                json=self.build_request(notification),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Slack API error: {e.response.status_code} - {e.response.text}")
            raise

        return {
            "success": True,
            "destination": "slack",
            "channel": channel,
            "status_code": response.status_code,
        }

    async def __call__(self, topic: str, payload: Dict[str, Any]) -> None:
        """Bus handler entry point."""
        if self.client:
            await self.send(payload)
            return

        async with self:
            await self.send(payload)
