"""
Security detection & response pipeline facade.
Wires the stores, scorer, correlator, incident manager, response executor
and alert router together and exposes the ingestion and query API that an
HTTP layer would wrap.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from security_pipeline.alerting.alert_router import AlertRouter
from security_pipeline.correlation.correlator import EventCorrelator
from security_pipeline.correlation.scheduler import CorrelationScheduler
from security_pipeline.database.connection import get_session_factory
from security_pipeline.database.models import (
    IncidentStatus,
    SecurityEvent,
    SecurityIncident,
    ThreatIntelligence,
    new_id,
    utcnow,
)
from security_pipeline.detection.risk_scorer import RiskScorer
from security_pipeline.exceptions import ValidationFailureError
from security_pipeline.incidents.incident_manager import IncidentManager
from security_pipeline.messaging import CommandBus
from security_pipeline.observability import get_logger, metrics
from security_pipeline.reporting import TIME_RANGES, MetricsReporter
from security_pipeline.response.response_executor import ResponseExecutor
from security_pipeline.schemas import (
    EventFilters,
    IncidentFilters,
    SecurityEventCreate,
    ThreatIndicatorCreate,
)
from security_pipeline.stores.event_store import EventStore
from security_pipeline.stores.incident_store import IncidentStore
from security_pipeline.stores.threat_intel_store import ThreatIntelStore

logger = get_logger(__name__)


def _validation_failure(message: str, error: ValidationError) -> ValidationFailureError:
    return ValidationFailureError(
        f"{message}: {error.error_count()} error(s)",
        errors=error.errors(include_url=False),
    )


class SecurityPipeline:
    """Single entry point for ingestion, queries and management operations."""

    def __init__(
        self,
        event_store: EventStore,
        threat_intel_store: ThreatIntelStore,
        incident_store: IncidentStore,
        scorer: RiskScorer,
        correlator: EventCorrelator,
        incident_manager: IncidentManager,
        alert_router: AlertRouter,
        reporter: MetricsReporter,
        bus: CommandBus,
    ):
        self.event_store = event_store
        self.threat_intel_store = threat_intel_store
        self.incident_store = incident_store
        self.scorer = scorer
        self.correlator = correlator
        self.incident_manager = incident_manager
        self.alert_router = alert_router
        self.reporter = reporter
        self.bus = bus

    @classmethod
    def from_session_factory(
        cls,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        bus: Optional[CommandBus] = None,
    ) -> "SecurityPipeline":
        """Build a fully wired pipeline on top of a session factory.

        Without a factory the process-wide one for ``settings.database_url``
        is used.
        """
        session_factory = session_factory or get_session_factory()
        bus = bus or CommandBus()
        event_store = EventStore(session_factory)
        threat_intel_store = ThreatIntelStore(session_factory)
        incident_store = IncidentStore(session_factory)
        alert_router = AlertRouter(bus)
        response_executor = ResponseExecutor(bus)

        return cls(
            event_store=event_store,
            threat_intel_store=threat_intel_store,
            incident_store=incident_store,
            scorer=RiskScorer(event_store, threat_intel_store),
            correlator=EventCorrelator(event_store),
            incident_manager=IncidentManager(
                incident_store, event_store, response_executor, alert_router
            ),
            alert_router=alert_router,
            reporter=MetricsReporter(session_factory),
            bus=bus,
        )

    def correlation_scheduler(self, interval_seconds: Optional[float] = None) -> CorrelationScheduler:
        return CorrelationScheduler(self.correlator, interval_seconds)

    async def ingest_event(
        self,
        event_type: str,
        description: str,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        """
        Validate, score and persist a security event, then respond to it.

        Scoring, persistence and incident failures propagate to the caller.
        Alert and response dispatch failures are logged and counted only.

        Returns:
            The stored event with its score, severity and threat flag

        Raises:
            ValidationFailureError: If the payload is malformed
            StoreUnavailableError: If the event could not be persisted
        """
        try:
            payload = SecurityEventCreate(
                event_type=event_type,
                description=description,
                source_ip=source_ip,
                user_agent=user_agent,
                user_id=user_id,
                resource=resource,
                action=action,
                metadata=metadata or {},
            )
        except ValidationError as e:
            raise _validation_failure("Invalid security event", e)

        event = SecurityEvent(
            id=new_id(),
            event_type=payload.event_type,
            description=payload.description,
            source_ip=payload.source_ip,
            user_agent=payload.user_agent,
            user_id=payload.user_id,
            resource=payload.resource,
            action=payload.action,
            event_metadata=payload.metadata,
            response_actions=[],
            created_at=utcnow(),
        )

        analysis = await self.scorer.analyze(event)
        event.risk_score = analysis.risk_score
        event.is_threat = analysis.is_threat
        event.severity = analysis.severity

        await self.event_store.add(event)

        metrics.events_ingested_total.labels(
            event_type=event.event_type.value,
            is_threat=str(event.is_threat).lower(),
        ).inc()
        metrics.risk_score_distribution.observe(event.risk_score)

        if event.is_threat:
            logger.warning(
                f"Threat detected: {event.event_type.value} risk={event.risk_score} "
                f"reasons={analysis.reasons}"
            )
            await self.incident_manager.handle_threat_event(event)

        await self.alert_router.route("event", event)

        logger.info(f"Security event ingested: {event.id} ({event.event_type.value})")
        return event

    async def get_events(self, filters: Optional[EventFilters] = None) -> Dict[str, Any]:
        """Filtered event listing: ``{"events": [...], "total": n}``."""
        events, total = await self.event_store.search(filters or EventFilters())
        return {"events": events, "total": total}

    async def get_metrics(self, start: datetime, end: datetime) -> Dict[str, Any]:
        return await self.reporter.get_metrics(start, end)

    async def get_incidents(self, filters: Optional[IncidentFilters] = None) -> Dict[str, Any]:
        return await self.incident_manager.get_incidents(filters)

    async def update_incident_status(
        self,
        incident_id: str,
        status: Union[IncidentStatus, str],
        assigned_to: Optional[str] = None,
    ) -> SecurityIncident:
        try:
            status = IncidentStatus(status)
        except ValueError:
            raise ValidationFailureError(f"Unknown incident status: {status}")
        return await self.incident_manager.update_incident_status(incident_id, status, assigned_to)

    async def correlate_events(self, window: Optional[timedelta] = None) -> List[str]:
        """Run one correlation pass over the trailing window."""
        return await self.correlator.correlate(window)

    async def update_threat_intelligence(
        self,
        indicators: Sequence[Union[ThreatIndicatorCreate, Dict[str, Any]]],
    ) -> int:
        """
        Bulk insert or refresh threat intelligence indicators.

        Raises:
            ValidationFailureError: If any indicator is malformed
        """
        try:
            validated = [
                item if isinstance(item, ThreatIndicatorCreate) else ThreatIndicatorCreate.model_validate(item)
                for item in indicators
            ]
        except ValidationError as e:
            raise _validation_failure("Invalid threat indicator", e)

        return await self.threat_intel_store.upsert_many(validated)

    async def get_active_threat_intelligence(self) -> List[ThreatIntelligence]:
        return await self.threat_intel_store.list_active()

    async def get_dashboard(self, time_range: str = "24h") -> Dict[str, Any]:
        """
        Dashboard snapshot for one of ``1h``, ``24h``, ``7d`` or ``30d``.

        Raises:
            ValidationFailureError: If the time range is not supported
        """
        if time_range not in TIME_RANGES:
            raise ValidationFailureError(
                f"Unsupported time range {time_range!r}; expected one of {sorted(TIME_RANGES)}"
            )

        end = utcnow()
        start = end - TIME_RANGES[time_range]

        security_metrics = await self.get_metrics(start, end)
        recent = await self.get_incidents(IncidentFilters(limit=10))
        active_intel = await self.get_active_threat_intelligence()

        return {
            "metrics": security_metrics,
            "recent_incidents": recent["incidents"],
            "active_threat_intelligence": len(active_intel),
            "time_range": time_range,
            "last_updated": end,
        }
