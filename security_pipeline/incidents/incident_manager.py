"""
Incident lifecycle management.
Opens incidents for high-risk events, triggers automated response and
alerting, and enforces the forward-only status lifecycle.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from security_pipeline.alerting.alert_router import AlertRouter
from security_pipeline.config import settings
from security_pipeline.database.models import (
    IncidentSeverity,
    IncidentStatus,
    SecurityEvent,
    SecurityIncident,
    new_id,
    utcnow,
)
from security_pipeline.exceptions import InvalidTransitionError, NotFoundError
from security_pipeline.observability import get_logger, metrics
from security_pipeline.response.response_executor import ResponseExecutor
from security_pipeline.schemas import IncidentFilters
from security_pipeline.stores.event_store import EventStore
from security_pipeline.stores.incident_store import IncidentStore

logger = get_logger(__name__)

STATUS_ORDER = {
    IncidentStatus.OPEN: 0,
    IncidentStatus.INVESTIGATING: 1,
    IncidentStatus.CONTAINED: 2,
    IncidentStatus.RESOLVED: 3,
    IncidentStatus.CLOSED: 4,
}

TERMINAL_STATUSES = (IncidentStatus.RESOLVED, IncidentStatus.CLOSED)

RECIPIENTS_BY_SEVERITY: Dict[IncidentSeverity, List[str]] = {
    IncidentSeverity.CRITICAL: ["security-team", "ciso", "cto", "on-call-engineer"],
    IncidentSeverity.HIGH: ["security-team", "security-manager", "on-call-engineer"],
    IncidentSeverity.MEDIUM: ["security-team", "security-analyst"],
    IncidentSeverity.LOW: ["security-team"],
}

DEFAULT_AFFECTED_SYSTEMS = ["web-application"]


def can_transition(current: IncidentStatus, target: IncidentStatus) -> bool:
    """Forward moves and same-state updates are allowed; backward moves are not."""
    return STATUS_ORDER[target] >= STATUS_ORDER[current]


def statuses_before(target: IncidentStatus) -> List[IncidentStatus]:
    """Statuses an incident may move to ``target`` from."""
    return [s for s, order in STATUS_ORDER.items() if order <= STATUS_ORDER[target]]


class _KeyedLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class IncidentManager:
    """Creates and tracks security incidents."""

    def __init__(
        self,
        incident_store: IncidentStore,
        event_store: EventStore,
        response_executor: ResponseExecutor,
        alert_router: AlertRouter,
    ):
        self.incident_store = incident_store
        self.event_store = event_store
        self.response_executor = response_executor
        self.alert_router = alert_router

        # One lock per correlation id around check-and-create, dropped once idle
        self._correlation_locks: Dict[str, _KeyedLock] = {}

    @asynccontextmanager
    async def _locked(self, correlation_id: str) -> AsyncIterator[None]:
        entry = self._correlation_locks.get(correlation_id)
        if entry is None:
            entry = self._correlation_locks[correlation_id] = _KeyedLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._correlation_locks[correlation_id]

    async def handle_threat_event(self, event: SecurityEvent) -> Optional[SecurityIncident]:
        """
        Open an incident for a high-risk event.
        At most one OPEN incident exists per correlation id; events without
        a correlation id always get their own incident.

        Args:
            event: Scored, persisted event

        Returns:
            The new incident, or None when none was warranted
        """
        if (event.risk_score or 0.0) <= settings.incident_risk_threshold:
            return None

        if event.correlation_id:
            async with self._locked(event.correlation_id):
                existing = await self.incident_store.find_open_by_correlation(event.correlation_id)
                if existing is not None:
                    logger.info(
                        f"Open incident {existing.id} already tracks correlation "
                        f"{event.correlation_id}; skipping event {event.id}"
                    )
                    return None
                incident, actions = await self._open_incident(event)
        else:
            incident, actions = await self._open_incident(event)

        await self.event_store.update_fields(event.id, response_actions=incident.response_actions)
        event.response_actions = incident.response_actions

        await self.alert_router.route(
            "incident",
            incident,
            recipients=RECIPIENTS_BY_SEVERITY.get(incident.severity, ["security-team"]),
        )
        await self.alert_router.notify_response_actions(actions)

        metrics.incidents_created_total.labels(severity=incident.severity.value).inc()
        logger.warning(f"Security incident created: {incident.id} for event {event.id}")
        return incident

    async def _open_incident(self, event: SecurityEvent):
        incident = self.build_incident(event)
        actions = await self.response_executor.execute(event, incident)
        incident.response_actions = [action.descriptor for action in actions]
        await self.incident_store.add(incident)
        return incident, actions

    def build_incident(self, event: SecurityEvent) -> SecurityIncident:
        """Unsaved incident describing a triggering event."""
        now = utcnow()
        return SecurityIncident(
            id=new_id(),
            title=f"Security Incident - {event.event_type.value}",
            description=f"Automated incident created for security event: {event.description}",
            severity=IncidentSeverity(event.severity.value),
            status=IncidentStatus.OPEN,
            affected_systems=self.affected_systems(event),
            response_actions=[],
            correlation_id=event.correlation_id,
            detected_at=event.created_at,
            incident_metadata={
                "triggerEventId": event.id,
                "riskScore": event.risk_score,
                "sourceIp": event.source_ip,
                "userId": event.user_id,
            },
            created_at=now,
            updated_at=now,
        )

    def affected_systems(self, event: SecurityEvent) -> List[str]:
        systems = []
        if event.resource:
            systems.append(event.resource)
        system_id = (event.event_metadata or {}).get("systemId")
        if system_id and system_id not in systems:
            systems.append(str(system_id))
        return systems or list(DEFAULT_AFFECTED_SYSTEMS)

    async def get_incidents(self, filters: Optional[IncidentFilters] = None) -> Dict[str, Any]:
        """Filtered incident listing: ``{"incidents": [...], "total": n}``."""
        incidents, total = await self.incident_store.search(filters or IncidentFilters())
        return {"incidents": incidents, "total": total}

    async def update_incident_status(
        self,
        incident_id: str,
        status: IncidentStatus,
        assigned_to: Optional[str] = None,
    ) -> SecurityIncident:
        """
        Move an incident through its lifecycle.

        Raises:
            NotFoundError: If the incident does not exist
            InvalidTransitionError: If the move goes backward
        """
        status = IncidentStatus(status)
        incident = await self.incident_store.get(incident_id)
        if incident is None:
            raise NotFoundError("incident", incident_id)

        if not can_transition(incident.status, status):
            raise InvalidTransitionError(
                f"Cannot move incident {incident_id} from {incident.status.value} to {status.value}"
            )

        updates: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if assigned_to is not None:
            updates["assigned_to"] = assigned_to

        # The write only lands while the stored status still allows the move
        written = await self.incident_store.update_fields(
            incident_id,
            allowed_statuses=statuses_before(status),
            stamp_resolved=status in TERMINAL_STATUSES,
            **updates,
        )

        current = await self.incident_store.get(incident_id)
        if current is None:
            raise NotFoundError("incident", incident_id)
        if not written:
            raise InvalidTransitionError(
                f"Cannot move incident {incident_id} from {current.status.value} to {status.value}"
            )

        logger.info(f"Incident {incident_id} status updated to {status.value}")
        return current
