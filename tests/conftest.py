"""Pytest configuration and shared fixtures."""
import pytest
from datetime import datetime, timedelta
from typing import Any, Dict

from security_pipeline import messaging
from security_pipeline.alerting import AlertRouter
from security_pipeline.database import create_engine_for_url, create_session_factory, init_db
from security_pipeline.database.models import EventSeverity, EventType, SecurityEvent, new_id
from security_pipeline.detection import RiskScorer
from security_pipeline.incidents import IncidentManager
from security_pipeline.messaging import CommandBus, RecordingSubscriber
from security_pipeline.pipeline import SecurityPipeline
from security_pipeline.response import ResponseExecutor
from security_pipeline.stores import EventStore, IncidentStore, ThreatIntelStore


# Midday, so the off-hours heuristic stays quiet unless a test wants it
NOON = datetime(2024, 1, 10, 12, 0, 0)


@pytest.fixture
async def test_engine(tmp_path):
    """Create a file-backed SQLite engine with the schema installed."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def event_store(session_factory):
    return EventStore(session_factory)


@pytest.fixture
def threat_intel_store(session_factory):
    return ThreatIntelStore(session_factory)


@pytest.fixture
def incident_store(session_factory):
    return IncidentStore(session_factory)


@pytest.fixture
def recorder():
    return RecordingSubscriber()


@pytest.fixture
def bus(recorder):
    """Bus with a recorder on every response and notification topic."""
    command_bus = CommandBus()
    command_bus.subscribe("security.response.*", recorder)
    command_bus.subscribe("notification.*", recorder)
    return command_bus


@pytest.fixture
def scorer(event_store, threat_intel_store):
    return RiskScorer(event_store, threat_intel_store)


@pytest.fixture
def response_executor(bus):
    return ResponseExecutor(bus, dispatch_timeout=1.0)


@pytest.fixture
def alert_router(bus):
    return AlertRouter(bus, dispatch_timeout=1.0)


@pytest.fixture
def incident_manager(incident_store, event_store, response_executor, alert_router):
    return IncidentManager(incident_store, event_store, response_executor, alert_router)


@pytest.fixture
def pipeline(session_factory, bus):
    return SecurityPipeline.from_session_factory(session_factory, bus=bus)


@pytest.fixture
def make_event():
    """Factory for unsaved security events."""

    def _make_event(**overrides: Any) -> SecurityEvent:
        values: Dict[str, Any] = {
            "id": new_id(),
            "event_type": EventType.LOGIN_ATTEMPT,
            "severity": EventSeverity.LOW,
            "description": "User signed in",
            "source_ip": "192.168.1.100",
            "user_id": "user-1",
            "event_metadata": {},
            "response_actions": [],
            "is_threat": False,
            "risk_score": 0.0,
            "created_at": NOON,
        }
        values.update(overrides)
        return SecurityEvent(**values)

    return _make_event


@pytest.fixture
def store_events(event_store, make_event):
    """Persist ``count`` events built from the same overrides, one second apart."""

    async def _store_events(count: int, **overrides: Any):
        start = overrides.pop("created_at", NOON)
        events = []
        for i in range(count):
            event = make_event(created_at=start - timedelta(seconds=i + 1), **overrides)
            events.append(await event_store.add(event))
        return events

    return _store_events


@pytest.fixture
def response_topics():
    return [
        messaging.BLOCK_IP,
        messaging.DISABLE_USER,
        messaging.ALERT_ADMIN,
        messaging.ISOLATE_SYSTEM,
    ]
