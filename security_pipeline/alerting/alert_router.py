"""Rule-based alert routing to notification channels."""

import asyncio
import json
import re
import threading
import time
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from security_pipeline import messaging
from security_pipeline.config import settings
from security_pipeline.database.models import SecurityEvent, SecurityIncident, utcnow
from security_pipeline.exceptions import NotFoundError, ValidationFailureError
from security_pipeline.messaging import CommandBus
from security_pipeline.observability import get_logger, metrics
from security_pipeline.schemas import AlertChannel, AlertRule, AlertRuleCreate, ChannelType

logger = get_logger(__name__)

Subject = Union[SecurityEvent, SecurityIncident]

CHANNEL_TOPICS = {
    ChannelType.EMAIL: messaging.EMAIL_SEND,
    ChannelType.SLACK: messaging.SLACK_SEND,
    ChannelType.WEBHOOK: messaging.WEBHOOK_SEND,
    ChannelType.SMS: messaging.SMS_SEND,
}

SEVERITY_COLORS = {
    "critical": "#ff0000",
    "high": "#ff8800",
    "medium": "#ffaa00",
    "low": "#00aa00",
}

_RISK_CONDITION = re.compile(r"^\s*riskScore\s*>\s*([0-9]*\.?[0-9]+)\s*$")
_SEVERITY_CONDITION = re.compile(r"^\s*severity\s*=\s*['\"]?([A-Za-z_]+)['\"]?\s*$")


def default_rules() -> List[AlertRule]:
    """Rules every router starts with."""
    return [
        AlertRule(
            id="high-risk-event",
            name="High Risk Security Event",
            condition="riskScore > 0.8",
            severity="high",
            channels=[
                AlertChannel(type=ChannelType.EMAIL, config={"recipients": ["security@company.com"]}),
                AlertChannel(type=ChannelType.SLACK, config={"channel": "#security-alerts"}),
            ],
        ),
        AlertRule(
            id="critical-incident",
            name="Critical Security Incident",
            condition="severity = critical",
            severity="critical",
            channels=[
                AlertChannel(
                    type=ChannelType.EMAIL,
                    config={"recipients": ["security@company.com", "ciso@company.com"]},
                ),
                AlertChannel(type=ChannelType.SLACK, config={"channel": "#security-critical"}),
                AlertChannel(type=ChannelType.SMS, config={"numbers": ["+1234567890"]}),
            ],
        ),
    ]


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class AlertRouter:
    """Evaluates alert rules against events and incidents and fans out notifications."""

    def __init__(
        self,
        bus: CommandBus,
        rules: Optional[Sequence[AlertRule]] = None,
        dispatch_timeout: Optional[float] = None,
        history_size: Optional[int] = None,
    ) -> None:
        """Initialize alert router.

        Args:
            bus: Bus the notification payloads are published on
            rules: Initial rules (defaults seeded when omitted)
            dispatch_timeout: Per-channel publish timeout in seconds
            history_size: Number of delivery attempts kept
        """
        self.bus = bus
        self.dispatch_timeout = dispatch_timeout or settings.dispatch_timeout_seconds

        # Readers take a snapshot; writers replace the tuple under the lock
        self._rules: Tuple[AlertRule, ...] = tuple(rules if rules is not None else default_rules())
        self._rules_lock = threading.Lock()

        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size or settings.alert_history_size)

    # Rule management

    def list_rules(self) -> List[AlertRule]:
        return list(self._rules)

    def get_rule(self, rule_id: str) -> AlertRule:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        raise NotFoundError("alert rule", rule_id)

    def add_rule(self, rule: Union[AlertRuleCreate, Dict[str, Any]]) -> AlertRule:
        """Register a new rule.

        Args:
            rule: Rule definition without an id

        Returns:
            The stored rule

        Raises:
            ValidationFailureError: If the definition is malformed
        """
        data = rule.model_dump() if isinstance(rule, AlertRuleCreate) else dict(rule)
        data["id"] = f"rule_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        stored = self._build_rule(data)

        with self._rules_lock:
            self._rules = self._rules + (stored,)

        logger.info(f"Alert rule added: {stored.id} ({stored.name})")
        return stored

    def update_rule(self, rule_id: str, updates: Dict[str, Any]) -> AlertRule:
        """Apply a partial update to a rule.

        Raises:
            NotFoundError: If no rule has this id
            ValidationFailureError: If the merged rule is malformed
        """
        with self._rules_lock:
            current = None
            for rule in self._rules:
                if rule.id == rule_id:
                    current = rule
                    break
            if current is None:
                raise NotFoundError("alert rule", rule_id)

            merged = {**current.model_dump(), **updates, "id": rule_id}
            updated = self._build_rule(merged)
            self._rules = tuple(updated if r.id == rule_id else r for r in self._rules)

        logger.info(f"Alert rule updated: {rule_id}")
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        """Remove a rule; returns False if it did not exist."""
        with self._rules_lock:
            remaining = tuple(r for r in self._rules if r.id != rule_id)
            if len(remaining) == len(self._rules):
                return False
            self._rules = remaining

        logger.info(f"Alert rule deleted: {rule_id}")
        return True

    def _build_rule(self, data: Dict[str, Any]) -> AlertRule:
        try:
            return AlertRule.model_validate(data)
        except ValidationError as e:
            raise ValidationFailureError(
                f"Invalid alert rule: {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            )

    # Evaluation

    def evaluate_condition(self, condition: str, subject_type: str, subject: Subject) -> bool:
        """Evaluate a rule condition. Unknown grammar never matches."""
        risk_match = _RISK_CONDITION.match(condition)
        if risk_match:
            if subject_type != "event":
                return False
            return (getattr(subject, "risk_score", None) or 0.0) > float(risk_match.group(1))

        severity_match = _SEVERITY_CONDITION.match(condition)
        if severity_match:
            return str(_enum_value(subject.severity)) == severity_match.group(1).lower()

        logger.debug(f"Unrecognized alert condition: {condition!r}")
        return False

    def matching_rules(self, subject_type: str, subject: Subject) -> List[AlertRule]:
        return [
            rule
            for rule in self._rules
            if rule.enabled and self.evaluate_condition(rule.condition, subject_type, subject)
        ]

    async def route(
        self,
        subject_type: str,
        subject: Subject,
        recipients: Optional[List[str]] = None,
    ) -> int:
        """Send notifications for every matching rule and channel.

        Args:
            subject_type: ``"event"`` or ``"incident"``
            subject: The event or incident
            recipients: Extra recipients added to the notification body

        Returns:
            Number of successful dispatches
        """
        rules = self.matching_rules(subject_type, subject)
        if not rules:
            return 0

        message = self._format_message(subject_type, subject)
        data = subject.to_dict()
        if recipients:
            data["recipients"] = list(recipients)

        sends = [
            self._dispatch(rule, channel, message, data)
            for rule in rules
            for channel in rule.channels
        ]
        results = await asyncio.gather(*sends)
        delivered = sum(1 for ok in results if ok)

        logger.info(
            f"Routed {subject_type} {subject.id}: {delivered}/{len(sends)} deliveries "
            f"across {len(rules)} rule(s)"
        )
        return delivered

    async def notify_response_actions(self, actions: Sequence[Any]) -> int:
        """Announce dispatched response actions on the Slack response channel."""
        delivered = 0
        for action in actions:
            if not getattr(action, "dispatched", False):
                continue
            payload = {
                "channel": settings.slack_response_channel,
                "message": (
                    f"🛡️ *Automated Response Executed*\n"
                    f"Action: {action.type.value}\n"
                    f"Target: {action.target}\n"
                    f"Time: {utcnow().isoformat()}"
                ),
                "color": "#0066cc",
            }
            if await self._publish("response-actions", ChannelType.SLACK, payload):
                delivered += 1
        return delivered

    def delivery_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent delivery attempts, newest first."""
        return list(reversed(self._history))[:limit]

    def _format_message(self, subject_type: str, subject: Subject) -> str:
        if subject_type == "event":
            return (
                f"Security event detected: {_enum_value(subject.event_type)} "
                f"(Risk Score: {subject.risk_score})"
            )
        return f"Security incident created: {subject.title} (Severity: {_enum_value(subject.severity)})"

    def build_payload(
        self,
        channel: AlertChannel,
        message: str,
        data: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Channel-specific notification payload."""
        timestamp = utcnow().isoformat()

        if channel.type == ChannelType.EMAIL:
            return {
                "recipients": channel.config.get("recipients", []),
                "subject": f"Security Alert: {message}",
                "body": f"{message}\n\nDetails:\n{json.dumps(data, indent=2, default=str)}",
                "priority": "high",
            }
        if channel.type == ChannelType.SLACK:
            return {
                "channel": channel.config.get("channel", settings.slack_default_channel),
                "message": f"🚨 *Security Alert*\n{message}",
                "color": SEVERITY_COLORS.get(str(data.get("severity")), "#888888"),
            }
        if channel.type == ChannelType.WEBHOOK:
            return {
                "url": channel.config.get("url"),
                "payload": {"alert": message, "data": data, "timestamp": timestamp},
                "timestamp": timestamp,
            }
        return {
            "numbers": channel.config.get("numbers", []),
            "message": f"SECURITY ALERT: {message}",
        }

    async def _dispatch(
        self,
        rule: AlertRule,
        channel: AlertChannel,
        message: str,
        data: Dict[str, Any],
    ) -> bool:
        payload = self.build_payload(channel, message, data)
        return await self._publish(rule.id, channel.type, payload)

    async def _publish(self, rule_id: str, channel_type: ChannelType, payload: Dict[str, Any]) -> bool:
        entry: Dict[str, Any] = {
            "rule_id": rule_id,
            "channel": channel_type.value,
            "timestamp": utcnow(),
        }
        try:
            await asyncio.wait_for(
                self.bus.publish(CHANNEL_TOPICS[channel_type], payload),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError:
            entry.update(success=False, error=f"timed out after {self.dispatch_timeout}s")
            metrics.alert_dispatches_total.labels(channel=channel_type.value, outcome="timeout").inc()
            logger.error(f"Alert dispatch to {channel_type.value} timed out (rule {rule_id})")
        except Exception as e:
            entry.update(success=False, error=str(e))
            metrics.alert_dispatches_total.labels(channel=channel_type.value, outcome="failed").inc()
            logger.error(f"Failed to send {channel_type.value} alert for rule {rule_id}: {e}")
        else:
            entry.update(success=True, error=None)
            metrics.alert_dispatches_total.labels(channel=channel_type.value, outcome="delivered").inc()

        self._history.append(entry)
        return entry["success"]
