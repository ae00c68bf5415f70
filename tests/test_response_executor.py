"""
Tests for the response executor.
"""
import asyncio

import pytest

from security_pipeline import messaging
from security_pipeline.database.models import IncidentSeverity, IncidentStatus, SecurityIncident
from security_pipeline.messaging import CommandBus, RecordingSubscriber
from security_pipeline.response import ResponseActionType, ResponseExecutor


@pytest.fixture
def incident():
    return SecurityIncident(
        id="inc-1",
        title="Security Incident - malware_detection",
        description="Automated incident",
        severity=IncidentSeverity.CRITICAL,
        status=IncidentStatus.OPEN,
    )


@pytest.mark.asyncio
async def test_critical_event_triggers_all_actions(response_executor, recorder, make_event, incident):
    """Test a near-certain threat blocks, disables, alerts and isolates."""
    event = make_event(
        risk_score=0.97,
        source_ip="192.0.2.10",
        user_id="mallory",
        event_metadata={"systemId": "srv-9"},
    )

    actions = await response_executor.execute(event, incident)

    assert [a.type for a in actions] == [
        ResponseActionType.BLOCK_IP,
        ResponseActionType.DISABLE_USER,
        ResponseActionType.ALERT_ADMIN,
        ResponseActionType.ISOLATE_SYSTEM,
    ]
    assert [a.descriptor for a in actions] == [
        "block_ip:192.0.2.10",
        "disable_user:mallory",
        "alert_admin:security-team",
        "isolate_system:srv-9",
    ]
    assert all(a.dispatched for a in actions)

    assert recorder.payloads(messaging.BLOCK_IP) == [{
        "ip": "192.0.2.10",
        "reason": "High-risk security event",
        "duration": "24h",
        "incident_id": "inc-1",
    }]
    assert recorder.payloads(messaging.DISABLE_USER) == [{
        "user_id": "mallory",
        "reason": "Critical security threat",
        "incident_id": "inc-1",
    }]
    assert recorder.payloads(messaging.ALERT_ADMIN) == [{
        "target": "security-team",
        "incident_id": "inc-1",
        "severity": "critical",
        "message": "Security incident requires immediate attention",
    }]
    assert recorder.payloads(messaging.ISOLATE_SYSTEM) == [{
        "system_id": "srv-9",
        "reason": "Critical threat detected",
        "incident_id": "inc-1",
    }]


@pytest.mark.parametrize(
    "risk_score,source_ip,blocked",
    [
        (0.8, "192.0.2.20", False),
        (0.81, "192.0.2.20", True),
        (0.95, None, False),
    ],
)
def test_block_ip_rule(response_executor, make_event, incident, risk_score, source_ip, blocked):
    """Test block_ip is planned only for a source IP scoring above 0.8."""
    actions = response_executor.plan(make_event(risk_score=risk_score, source_ip=source_ip), incident)

    assert (ResponseActionType.BLOCK_IP in [a.type for a in actions]) is blocked


def test_alert_admin_always_planned(response_executor, make_event, incident):
    """Test every incident alerts the security team."""
    actions = response_executor.plan(make_event(risk_score=0.71, user_id=None), incident)

    assert [a.descriptor for a in actions] == ["alert_admin:security-team"]


def test_isolate_unknown_system(response_executor, make_event, incident):
    """Test isolation targets 'unknown' when no system id is given."""
    actions = response_executor.plan(make_event(risk_score=0.96), incident)

    assert actions[-1].descriptor == "isolate_system:unknown"


@pytest.mark.asyncio
async def test_failed_action_does_not_stop_others(make_event, incident):
    """Test one failing command leaves the other actions dispatched."""
    bus = CommandBus()
    recorder = RecordingSubscriber()
    bus.subscribe("security.response.*", recorder)

    async def firewall_down(topic, payload):
        raise ConnectionError("firewall unreachable")

    bus.subscribe(messaging.BLOCK_IP, firewall_down)
    executor = ResponseExecutor(bus, dispatch_timeout=1.0)

    actions = await executor.execute(make_event(risk_score=0.97), incident)

    by_type = {a.type: a for a in actions}
    assert by_type[ResponseActionType.BLOCK_IP].dispatched is False
    assert "firewall unreachable" in by_type[ResponseActionType.BLOCK_IP].error
    assert by_type[ResponseActionType.DISABLE_USER].dispatched is True
    assert by_type[ResponseActionType.ALERT_ADMIN].dispatched is True
    assert by_type[ResponseActionType.ISOLATE_SYSTEM].dispatched is True
    assert messaging.ISOLATE_SYSTEM in recorder.topics()


@pytest.mark.asyncio
async def test_slow_action_times_out(make_event, incident):
    """Test a command that exceeds the dispatch timeout is abandoned."""
    bus = CommandBus()

    async def slow_iam(topic, payload):
        await asyncio.sleep(1)

    bus.subscribe(messaging.DISABLE_USER, slow_iam)
    executor = ResponseExecutor(bus, dispatch_timeout=0.05)

    actions = await executor.execute(make_event(risk_score=0.92), incident)

    by_type = {a.type: a for a in actions}
    assert by_type[ResponseActionType.DISABLE_USER].dispatched is False
    assert "timed out" in by_type[ResponseActionType.DISABLE_USER].error
    assert by_type[ResponseActionType.BLOCK_IP].dispatched is True


def test_action_to_dict(response_executor, make_event, incident):
    """Test response action serialization."""
    action = response_executor.plan(make_event(risk_score=0.85), incident)[0]

    assert action.to_dict() == {
        "type": "block_ip",
        "target": "192.168.1.100",
        "metadata": {"reason": "High-risk security event", "incidentId": "inc-1"},
        "dispatched": False,
        "error": None,
    }
