"""Automated containment actions for high-risk events."""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from security_pipeline import messaging
from security_pipeline.config import settings
from security_pipeline.database.models import SecurityEvent, SecurityIncident
from security_pipeline.messaging import CommandBus
from security_pipeline.observability import get_logger, metrics

logger = get_logger(__name__)


class ResponseActionType(str, Enum):
    """Containment actions the pipeline can order."""
    BLOCK_IP = "block_ip"
    DISABLE_USER = "disable_user"
    ALERT_ADMIN = "alert_admin"
    ISOLATE_SYSTEM = "isolate_system"


ACTION_TOPICS = {
    ResponseActionType.BLOCK_IP: messaging.BLOCK_IP,
    ResponseActionType.DISABLE_USER: messaging.DISABLE_USER,
    ResponseActionType.ALERT_ADMIN: messaging.ALERT_ADMIN,
    ResponseActionType.ISOLATE_SYSTEM: messaging.ISOLATE_SYSTEM,
}


@dataclass
class ResponseAction:
    """A containment action and whether its command was delivered."""
    type: ResponseActionType
    target: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    dispatched: bool = False
    error: Optional[str] = None

    @property
    def descriptor(self) -> str:
        """Compact ``type:target`` form stored on incidents and events."""
        return f"{self.type.value}:{self.target}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "type": self.type.value,
            "target": self.target,
            "metadata": dict(self.metadata),
            "dispatched": self.dispatched,
            "error": self.error,
        }


class ResponseExecutor:
    """Maps event risk to containment actions and dispatches them as commands."""

    def __init__(self, bus: CommandBus, dispatch_timeout: Optional[float] = None):
        self.bus = bus
        self.dispatch_timeout = dispatch_timeout or settings.dispatch_timeout_seconds

    def plan(self, event: SecurityEvent, incident: SecurityIncident) -> List[ResponseAction]:
        """
        Decide which actions an event warrants.
        Every row of the decision table is checked independently.

        Args:
            event: Triggering event
            incident: Incident opened for the event

        Returns:
            Actions in dispatch order
        """
        actions: List[ResponseAction] = []
        risk_score = event.risk_score or 0.0

        if event.source_ip and risk_score > settings.block_ip_threshold:
            actions.append(ResponseAction(
                type=ResponseActionType.BLOCK_IP,
                target=event.source_ip,
                metadata={"reason": "High-risk security event", "incidentId": incident.id},
            ))

        if event.user_id and risk_score > settings.disable_user_threshold:
            actions.append(ResponseAction(
                type=ResponseActionType.DISABLE_USER,
                target=event.user_id,
                metadata={"reason": "Critical security threat", "incidentId": incident.id},
            ))

        # Admin notification for all incidents
        actions.append(ResponseAction(
            type=ResponseActionType.ALERT_ADMIN,
            target="security-team",
            metadata={"incidentId": incident.id, "severity": incident.severity.value},
        ))

        if risk_score > settings.isolate_system_threshold:
            actions.append(ResponseAction(
                type=ResponseActionType.ISOLATE_SYSTEM,
                target=(event.event_metadata or {}).get("systemId") or "unknown",
                metadata={"reason": "Critical threat detected", "incidentId": incident.id},
            ))

        return actions

    async def execute(self, event: SecurityEvent, incident: SecurityIncident) -> List[ResponseAction]:
        """
        Plan and dispatch containment actions.
        Each command is sent independently with its own timeout; a failed
        command is logged and counted and never stops the others.

        Returns:
            Every planned action, with ``dispatched`` set per outcome
        """
        actions = self.plan(event, incident)
        await asyncio.gather(*(self._dispatch(action) for action in actions))

        failed = [a for a in actions if not a.dispatched]
        if failed:
            logger.error(
                f"{len(failed)} of {len(actions)} response actions failed for incident {incident.id}"
            )
        return actions

    def build_command(self, action: ResponseAction) -> Dict[str, Any]:
        """Self-contained command payload for the receiving system."""
        incident_id = action.metadata.get("incidentId")

        if action.type == ResponseActionType.BLOCK_IP:
            return {
                "ip": action.target,
                "reason": action.metadata.get("reason"),
                "duration": settings.block_ip_duration,
                "incident_id": incident_id,
            }
        if action.type == ResponseActionType.DISABLE_USER:
            return {
                "user_id": action.target,
                "reason": action.metadata.get("reason"),
                "incident_id": incident_id,
            }
        if action.type == ResponseActionType.ALERT_ADMIN:
            return {
                "target": action.target,
                "incident_id": incident_id,
                "severity": action.metadata.get("severity"),
                "message": "Security incident requires immediate attention",
            }
        return {
            "system_id": action.target,
            "reason": action.metadata.get("reason"),
            "incident_id": incident_id,
        }

    async def _dispatch(self, action: ResponseAction) -> None:
        topic = ACTION_TOPICS[action.type]
        try:
            await asyncio.wait_for(
                self.bus.publish(topic, self.build_command(action)),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError:
            action.error = f"timed out after {self.dispatch_timeout}s"
            metrics.response_actions_total.labels(action_type=action.type.value, outcome="timeout").inc()
            logger.error(f"Response action {action.descriptor} timed out")
            return
        except Exception as e:
            action.error = str(e)
            metrics.response_actions_total.labels(action_type=action.type.value, outcome="failed").inc()
            logger.error(f"Failed to execute response action {action.descriptor}: {e}")
            return

        action.dispatched = True
        metrics.response_actions_total.labels(action_type=action.type.value, outcome="dispatched").inc()
        self._log_dispatched(action)

    def _log_dispatched(self, action: ResponseAction) -> None:
        if action.type == ResponseActionType.BLOCK_IP:
            logger.warning(f"Blocked IP address: {action.target}")
        elif action.type == ResponseActionType.DISABLE_USER:
            logger.warning(f"Disabled user account: {action.target}")
        elif action.type == ResponseActionType.ALERT_ADMIN:
            logger.info(f"Admin alert sent for incident: {action.metadata.get('incidentId')}")
        else:
            logger.error(f"System isolated: {action.target}")
