"""
Outbound command and notification bus.
Response commands and alert notifications are published by topic to
registered handlers (firewall/WAF, IAM, ticketing, notification
transports). Publishing is fire-and-forget from the pipeline's point of
view: no reply is expected, but handler failures are reported back so the
caller can log and count them.
"""
import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Union

from security_pipeline.exceptions import DownstreamDispatchError
from security_pipeline.observability import get_logger

logger = get_logger(__name__)

# Response commands
BLOCK_IP = "security.response.block_ip"
DISABLE_USER = "security.response.disable_user"
ALERT_ADMIN = "security.response.alert_admin"
ISOLATE_SYSTEM = "security.response.isolate_system"

# Notifications
EMAIL_SEND = "notification.email.send"
SLACK_SEND = "notification.slack.send"
WEBHOOK_SEND = "notification.webhook.send"
SMS_SEND = "notification.sms.send"

Handler = Callable[[str, Dict[str, Any]], Union[Awaitable[None], None]]


class CommandBus:
    """Topic-based publish/subscribe with callback registration.

    Subscriptions ending in ``.*`` match every topic with that prefix,
    e.g. ``security.response.*``.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Register a handler called as ``handler(topic, payload)``."""
        self._handlers[topic].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)!r} to {topic}")

    def unsubscribe(self, topic: str, handler: Handler) -> bool:
        """Remove a handler; returns False if it was not registered."""
        handlers = self._handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handlers_for(self, topic: str) -> List[Handler]:
        """Handlers matching a topic, exact subscriptions first."""
        matched = list(self._handlers.get(topic, []))
        for pattern, handlers in self._handlers.items():
            if pattern.endswith(".*") and topic.startswith(pattern[:-1]):
                matched.extend(handlers)
        return matched

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """
        Deliver a message to every handler for the topic.

        All handlers run even if some fail.

        Args:
            topic: Message topic
            payload: Message body

        Returns:
            Number of handlers invoked

        Raises:
            DownstreamDispatchError: If any handler raised
        """
        handlers = self.handlers_for(topic)
        if not handlers:
            logger.debug(f"No subscribers for {topic}")
            return 0

        results = await asyncio.gather(
            *(self._invoke(handler, topic, payload) for handler in handlers),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if isinstance(error, asyncio.CancelledError):
                raise error
        if errors:
            raise DownstreamDispatchError(topic, errors)

        return len(handlers)

    async def _invoke(self, handler: Handler, topic: str, payload: Dict[str, Any]) -> None:
        result = handler(topic, payload)
        if inspect.isawaitable(result):
            await result


class RecordingSubscriber:
    """Handler that keeps every message it receives, for audit and tests."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def __call__(self, topic: str, payload: Dict[str, Any]) -> None:
        self.messages.append({"topic": topic, "payload": payload})

    def topics(self) -> List[str]:
        return [m["topic"] for m in self.messages]

    def payloads(self, topic: str) -> List[Dict[str, Any]]:
        return [m["payload"] for m in self.messages if m["topic"] == topic]
