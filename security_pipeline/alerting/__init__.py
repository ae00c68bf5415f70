"""Alert routing and notification transports."""
from typing import Optional

import httpx

from security_pipeline import messaging
from security_pipeline.alerting.alert_router import AlertRouter, default_rules
from security_pipeline.alerting.slack_sender import SlackSender
from security_pipeline.alerting.webhook_sender import WebhookSender
from security_pipeline.config import settings
from security_pipeline.messaging import CommandBus


def register_notification_transports(
    bus: CommandBus,
    slack_webhook_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Subscribe the HTTP transports to their notification topics.

    Slack is only wired when a webhook URL is configured.
    """
    slack_url = slack_webhook_url or settings.slack_webhook_url
    if slack_url:
        bus.subscribe(messaging.SLACK_SEND, SlackSender(slack_url, transport=transport))
    bus.subscribe(messaging.WEBHOOK_SEND, WebhookSender(transport=transport))


__all__ = [
    "AlertRouter",
    "SlackSender",
    "WebhookSender",
    "default_rules",
    "register_notification_transports",
]
