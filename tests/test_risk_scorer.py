"""
Tests for the risk scorer.
"""
import pytest
from datetime import datetime, timedelta

from security_pipeline.database.models import EventSeverity, EventType, ThreatType
from security_pipeline.detection import RiskScorer, severity_for_score
from security_pipeline.exceptions import StoreUnavailableError
from security_pipeline.schemas import ThreatIndicatorCreate

NOON = datetime(2024, 1, 10, 12, 0, 0)


class UnavailableEventStore:
    """Event store whose every query fails."""

    async def count_events(self, **kwargs):
        raise StoreUnavailableError("event store unavailable during count")

    async def recent_user_events(self, **kwargs):
        raise StoreUnavailableError("event store unavailable during recent_user_events")


class UnavailableThreatIntelStore:
    async def find_active(self, indicator, at=None):
        raise StoreUnavailableError("threat intelligence store unavailable during find_active")


@pytest.mark.parametrize(
    "score,expected",
    [
        (0.0, EventSeverity.LOW),
        (0.29, EventSeverity.LOW),
        (0.3, EventSeverity.MEDIUM),
        (0.59, EventSeverity.MEDIUM),
        (0.6, EventSeverity.HIGH),
        (0.79, EventSeverity.HIGH),
        (0.8, EventSeverity.CRITICAL),
        (1.0, EventSeverity.CRITICAL),
    ],
)
def test_severity_bands(score, expected):
    """Test severity banding of risk scores."""
    assert severity_for_score(score) == expected


@pytest.mark.asyncio
async def test_benign_event_scores_base_risk(scorer, make_event):
    """Test a quiet login attempt keeps only its base risk."""
    analysis = await scorer.analyze(make_event())

    assert analysis.risk_score == 0.1
    assert analysis.severity == EventSeverity.LOW
    assert analysis.is_threat is False
    assert analysis.reasons == []


@pytest.mark.asyncio
async def test_score_at_threshold_is_not_a_threat(scorer, make_event):
    """Test a score of exactly 0.5 is not flagged as a threat."""
    analysis = await scorer.analyze(make_event(event_type=EventType.SYSTEM_ANOMALY))

    assert analysis.risk_score == 0.5
    assert analysis.severity == EventSeverity.MEDIUM
    assert analysis.is_threat is False
    # Only base risk strictly above 0.5 is called out
    assert analysis.reasons == []


@pytest.mark.asyncio
async def test_high_risk_event_type_reason(scorer, make_event):
    """Test high base-risk types record a reason."""
    analysis = await scorer.analyze(make_event(event_type=EventType.UNAUTHORIZED_ACCESS))

    assert analysis.risk_score == 0.8
    assert analysis.severity == EventSeverity.CRITICAL
    assert analysis.is_threat is True
    assert "High-risk event type: unauthorized_access" in analysis.reasons


@pytest.mark.asyncio
async def test_repeated_login_failures(scorer, store_events, make_event):
    """Test three recent failures push a fourth into high severity."""
    await store_events(3, event_type=EventType.LOGIN_FAILURE, user_id="alice")

    analysis = await scorer.analyze(
        make_event(event_type=EventType.LOGIN_FAILURE, user_id="alice")
    )

    assert analysis.risk_score == pytest.approx(0.7)
    assert analysis.severity == EventSeverity.HIGH
    assert analysis.is_threat is True
    assert "Multiple login failures: 3 attempts" in analysis.reasons
    assert "Consider account lockout" in analysis.recommendations


@pytest.mark.asyncio
async def test_login_failures_outside_window_ignored(scorer, store_events, make_event):
    """Test failures older than the lookback window do not count."""
    await store_events(
        3,
        event_type=EventType.LOGIN_FAILURE,
        user_id="alice",
        created_at=NOON - timedelta(minutes=30),
    )

    analysis = await scorer.analyze(
        make_event(event_type=EventType.LOGIN_FAILURE, user_id="alice")
    )

    assert analysis.risk_score == pytest.approx(0.3)
    assert analysis.is_threat is False


@pytest.mark.asyncio
async def test_high_request_frequency(scorer, store_events, make_event):
    """Test sixty recent events from one IP add high-frequency risk."""
    await store_events(60, source_ip="198.51.100.7")

    analysis = await scorer.analyze(make_event(source_ip="198.51.100.7"))

    assert analysis.risk_score == pytest.approx(0.6)
    assert analysis.severity == EventSeverity.HIGH
    assert analysis.is_threat is True
    assert "High frequency requests: 60 in 5 minutes" in analysis.reasons
    assert "Implement rate limiting" in analysis.recommendations


@pytest.mark.asyncio
async def test_elevated_request_frequency(scorer, store_events, make_event):
    """Test moderate volume adds the elevated-frequency contribution."""
    await store_events(25, source_ip="198.51.100.8")

    analysis = await scorer.analyze(make_event(source_ip="198.51.100.8"))

    assert analysis.risk_score == 0.3
    assert analysis.severity == EventSeverity.MEDIUM
    assert "Elevated request frequency: 25 in 5 minutes" in analysis.reasons


@pytest.mark.asyncio
async def test_threat_intelligence_match(scorer, threat_intel_store, make_event):
    """Test an active indicator for the source IP raises the score."""
    await threat_intel_store.upsert_many([
        ThreatIndicatorCreate(
            threat_type=ThreatType.IP_BLACKLIST,
            indicator="203.0.113.5",
            description="Known botnet node",
            confidence=0.9,
            source="test-feed",
        )
    ])

    analysis = await scorer.analyze(make_event(source_ip="203.0.113.5"))

    assert analysis.risk_score == 0.5
    assert "Matches threat intelligence: Known botnet node" in analysis.reasons
    assert "Block source IP immediately" in analysis.recommendations


@pytest.mark.asyncio
async def test_expired_threat_intelligence_ignored(scorer, threat_intel_store, make_event):
    """Test expired indicators are treated as inactive."""
    await threat_intel_store.upsert_many([
        ThreatIndicatorCreate(
            threat_type=ThreatType.IP_BLACKLIST,
            indicator="203.0.113.6",
            confidence=0.9,
            expires_at=NOON - timedelta(hours=1),
        )
    ])

    analysis = await scorer.analyze(make_event(source_ip="203.0.113.6"))

    assert analysis.risk_score == 0.1
    assert analysis.reasons == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload,pattern",
    [
        ("' OR '1'='1", "sql_injection"),
        ("<script>alert(1)</script>", "xss"),
        ("../../etc/passwd", "path_traversal"),
        ("ls; rm -rf /", "command_injection"),
    ],
)
async def test_suspicious_payload_patterns(scorer, make_event, payload, pattern):
    """Test each built-in detector fires on its payload."""
    analysis = await scorer.analyze(make_event(event_metadata={"payload": payload}))

    assert analysis.risk_score == pytest.approx(0.4)
    assert f"Suspicious pattern detected: {pattern}" in analysis.reasons
    assert "Investigate request payload" in analysis.recommendations


@pytest.mark.asyncio
async def test_structured_payload_without_patterns(scorer, make_event):
    """Test structured payloads are matched per value, not as serialized JSON."""
    analysis = await scorer.analyze(
        make_event(event_metadata={"payload": {"query": "name", "page": 2}})
    )

    assert analysis.risk_score == 0.1


@pytest.mark.asyncio
async def test_off_hours_activity(scorer, make_event):
    """Test late-night activity adds risk."""
    analysis = await scorer.analyze(make_event(created_at=NOON.replace(hour=23)))

    assert analysis.risk_score == pytest.approx(0.2)
    assert "Activity during unusual hours" in analysis.reasons


@pytest.mark.asyncio
async def test_privilege_escalation_saturates(scorer, make_event):
    """Test the score is capped at 1.0 while reasons keep accumulating."""
    analysis = await scorer.analyze(
        make_event(
            event_type=EventType.PRIVILEGE_ESCALATION,
            event_metadata={"payload": "<script>alert(1)</script>"},
        )
    )

    assert analysis.risk_score == 1.0
    assert analysis.severity == EventSeverity.CRITICAL
    assert "High-risk event type: privilege_escalation" in analysis.reasons
    assert "Privilege escalation attempt detected" in analysis.reasons
    assert "Suspicious pattern detected: xss" in analysis.reasons


@pytest.mark.asyncio
async def test_identity_diversity(scorer, event_store, make_event):
    """Test one user seen from many IPs adds risk."""
    for i in range(4):
        await event_store.add(
            make_event(
                user_id="bob",
                source_ip=f"10.0.0.{i + 1}",
                created_at=NOON - timedelta(minutes=i + 1),
            )
        )

    analysis = await scorer.analyze(make_event(user_id="bob", source_ip="10.0.0.99"))

    assert analysis.risk_score == pytest.approx(0.4)
    assert "Multiple IP addresses used: 4 different IPs" in analysis.reasons


@pytest.mark.asyncio
async def test_unavailable_stores_fall_back(make_event):
    """Test store outages skip heuristics instead of failing the analysis."""
    scorer = RiskScorer(UnavailableEventStore(), UnavailableThreatIntelStore())

    analysis = await scorer.analyze(make_event(event_type=EventType.LOGIN_FAILURE))

    assert analysis.risk_score == pytest.approx(0.3)
    assert analysis.is_threat is False


@pytest.mark.asyncio
async def test_analysis_to_dict(scorer, make_event):
    """Test analysis serialization."""
    result = (await scorer.analyze(make_event())).to_dict()

    assert result["severity"] == "low"
    assert set(result) == {"is_threat", "risk_score", "severity", "reasons", "recommendations"}
