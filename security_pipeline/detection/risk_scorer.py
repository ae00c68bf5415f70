"""
Risk scoring engine.
Additive heuristic threat scoring for security events:
- Base risk by event type
- Threat intelligence match
- Payload pattern match
- Behavioral analysis (time of day, privilege escalation, login failures)
- Request frequency from the source IP
- Identity diversity (one user, many source IPs)
"""
import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from security_pipeline.config import settings
from security_pipeline.database.models import EventSeverity, EventType, SecurityEvent
from security_pipeline.detection.patterns import DEFAULT_DETECTORS, PatternDetector, first_match, payload_fragments
from security_pipeline.exceptions import StoreUnavailableError
from security_pipeline.observability import get_logger, metrics
from security_pipeline.stores.event_store import EventStore
from security_pipeline.stores.threat_intel_store import ThreatIntelStore

logger = get_logger(__name__)


# Base risk contributed by the event type alone
BASE_RISK: Dict[EventType, float] = {
    EventType.LOGIN_FAILURE: 0.3,
    EventType.UNAUTHORIZED_ACCESS: 0.8,
    EventType.PRIVILEGE_ESCALATION: 0.9,
    EventType.SUSPICIOUS_ACTIVITY: 0.6,
    EventType.MALWARE_DETECTION: 1.0,
    EventType.NETWORK_INTRUSION: 0.9,
    EventType.POLICY_VIOLATION: 0.4,
    EventType.SYSTEM_ANOMALY: 0.5,
}
DEFAULT_BASE_RISK = 0.1


def severity_for_score(risk_score: float) -> EventSeverity:
    """Band a risk score into an event severity."""
    if risk_score >= 0.8:
        return EventSeverity.CRITICAL
    if risk_score >= 0.6:
        return EventSeverity.HIGH
    if risk_score >= 0.3:
        return EventSeverity.MEDIUM
    return EventSeverity.LOW


@dataclass
class HeuristicResult:
    """Contribution of a single heuristic."""
    risk_increase: float = 0.0
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def add(self, risk: float, reason: str, recommendation: str) -> None:
        self.risk_increase += risk
        self.reasons.append(reason)
        self.recommendations.append(recommendation)


@dataclass
class ThreatAnalysis:
    """Outcome of scoring one event."""
    is_threat: bool
    risk_score: float
    severity: EventSeverity
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "is_threat": self.is_threat,
            "risk_score": self.risk_score,
            "severity": self.severity.value,
            "reasons": list(self.reasons),
            "recommendations": list(self.recommendations),
        }


class RiskScorer:
    """
    Heuristic threat scorer.
    Combines independent heuristics into a 0-1 risk score. Every heuristic
    is evaluated even once the score saturates so that reasons and
    recommendations form a complete audit trail.
    """

    def __init__(
        self,
        event_store: EventStore,
        threat_intel_store: ThreatIntelStore,
        detectors: Optional[Sequence[PatternDetector]] = None,
    ):
        self.event_store = event_store
        self.threat_intel_store = threat_intel_store
        self.detectors = list(detectors) if detectors is not None else list(DEFAULT_DETECTORS)

        # Risk contributed by each heuristic
        self.threat_intel_risk = 0.4
        self.pattern_risk = 0.3
        self.off_hours_risk = 0.1
        self.privilege_escalation_risk = 0.3
        self.login_failure_risk = 0.4
        self.high_frequency_risk = 0.5
        self.elevated_frequency_risk = 0.2
        self.identity_diversity_risk = 0.3

    async def analyze(self, event: SecurityEvent) -> ThreatAnalysis:
        """
        Score a security event.

        Args:
            event: Event to score; ``created_at`` anchors every lookback window

        Returns:
            Threat analysis with score, severity and audit trail
        """
        reasons: List[str] = []
        recommendations: List[str] = []

        base_risk = BASE_RISK.get(event.event_type, DEFAULT_BASE_RISK)
        risk_score = base_risk
        if base_risk > 0.5:
            reasons.append(f"High-risk event type: {event.event_type.value}")

        # Store-backed heuristics are read-only and independent
        intel, behavior, frequency, identity = await asyncio.gather(
            self._check_threat_intelligence(event),
            self._analyze_behavior(event),
            self._analyze_frequency(event),
            self._analyze_identity_diversity(event),
        )
        pattern = self._detect_suspicious_patterns(event)

        for result in (intel, pattern, behavior, frequency, identity):
            risk_score += result.risk_increase
            reasons.extend(result.reasons)
            recommendations.extend(result.recommendations)

        # Clamp, and round away float accumulation noise at band edges
        risk_score = round(min(max(risk_score, 0.0), 1.0), 4)
        is_threat = risk_score > settings.threat_threshold

        logger.debug(
            f"Threat analysis for event {event.id}: "
            f"Risk Score {risk_score}, Is Threat: {is_threat}"
        )

        return ThreatAnalysis(
            is_threat=is_threat,
            risk_score=risk_score,
            severity=severity_for_score(risk_score),
            reasons=reasons,
            recommendations=recommendations,
        )

    def _candidate_indicators(self, event: SecurityEvent) -> List[str]:
        indicators = []
        if event.source_ip:
            indicators.append(event.source_ip)
        payload = (event.event_metadata or {}).get("payload")
        if isinstance(payload, str) and payload:
            indicators.append(payload)
        return indicators

    async def _check_threat_intelligence(self, event: SecurityEvent) -> HeuristicResult:
        """
        Match the event against active threat intelligence.
        Only the first candidate indicator (source IP, else payload) is
        looked up.
        """
        result = HeuristicResult()
        indicators = self._candidate_indicators(event)
        if not indicators:
            return result

        try:
            match = await self.threat_intel_store.find_active(indicators[0], at=event.created_at)
        except StoreUnavailableError as e:
            self._record_fallback("threat_intelligence", e)
            return result

        if match is not None:
            result.add(
                self.threat_intel_risk,
                f"Matches threat intelligence: {match.description or match.indicator}",
                "Block source IP immediately",
            )
        return result

    def _detect_suspicious_patterns(self, event: SecurityEvent) -> HeuristicResult:
        """Run pattern detectors over the payload (or description)."""
        result = HeuristicResult()
        fragments = payload_fragments((event.event_metadata or {}).get("payload")) or [event.description or ""]

        pattern = first_match(fragments, self.detectors)
        if pattern:
            result.add(
                self.pattern_risk,
                f"Suspicious pattern detected: {pattern}",
                "Investigate request payload",
            )
        return result

    def _is_off_hours(self, hour: int) -> bool:
        start, end = settings.off_hours_start, settings.off_hours_end
        if start > end:
            return hour >= start or hour < end
        return start <= hour < end

    async def _analyze_behavior(self, event: SecurityEvent) -> HeuristicResult:
        """Time-of-day, privilege escalation and repeated login failures."""
        result = HeuristicResult()

        if self._is_off_hours(event.created_at.hour):
            result.add(self.off_hours_risk, "Activity during unusual hours", "Verify user identity")

        if event.event_type == EventType.PRIVILEGE_ESCALATION:
            result.add(
                self.privilege_escalation_risk,
                "Privilege escalation attempt detected",
                "Review user permissions immediately",
            )

        if event.event_type == EventType.LOGIN_FAILURE and event.user_id:
            try:
                recent_failures = await self.event_store.count_events(
                    since=event.created_at - timedelta(minutes=settings.login_failure_window_minutes),
                    until=event.created_at,
                    user_id=event.user_id,
                    event_type=EventType.LOGIN_FAILURE,
                    exclude_id=event.id,
                )
            except StoreUnavailableError as e:
                self._record_fallback("login_failures", e)
                return result

            if recent_failures >= settings.login_failure_threshold:
                result.add(
                    self.login_failure_risk,
                    f"Multiple login failures: {recent_failures} attempts",
                    "Consider account lockout",
                )

        return result

    async def _analyze_frequency(self, event: SecurityEvent) -> HeuristicResult:
        """Request volume from the same source IP."""
        result = HeuristicResult()
        if not event.source_ip:
            return result

        window = settings.frequency_window_minutes
        try:
            recent_events = await self.event_store.count_events(
                since=event.created_at - timedelta(minutes=window),
                until=event.created_at,
                source_ip=event.source_ip,
                exclude_id=event.id,
            )
        except StoreUnavailableError as e:
            self._record_fallback("frequency", e)
            return result

        if recent_events > settings.frequency_high_threshold:
            result.add(
                self.high_frequency_risk,
                f"High frequency requests: {recent_events} in {window} minutes",
                "Implement rate limiting",
            )
        elif recent_events > settings.frequency_elevated_threshold:
            result.add(
                self.elevated_frequency_risk,
                f"Elevated request frequency: {recent_events} in {window} minutes",
                "Monitor closely",
            )

        return result

    async def _analyze_identity_diversity(self, event: SecurityEvent) -> HeuristicResult:
        """One user appearing from many source IPs (simplified impossible travel)."""
        result = HeuristicResult()
        if not (event.source_ip and event.user_id):
            return result

        try:
            recent_user_events = await self.event_store.recent_user_events(
                user_id=event.user_id,
                since=event.created_at - timedelta(minutes=settings.identity_window_minutes),
                until=event.created_at,
                limit=settings.identity_sample_size,
                exclude_id=event.id,
            )
        except StoreUnavailableError as e:
            self._record_fallback("identity_diversity", e)
            return result

        unique_ips = {e.source_ip for e in recent_user_events if e.source_ip}
        if len(unique_ips) > settings.identity_max_source_ips:
            result.add(
                self.identity_diversity_risk,
                f"Multiple IP addresses used: {len(unique_ips)} different IPs",
                "Verify user location and device",
            )

        return result

    def _record_fallback(self, heuristic: str, error: Exception) -> None:
        metrics.scoring_fallbacks_total.labels(heuristic=heuristic).inc()
        logger.warning(f"Skipping {heuristic} heuristic, store unavailable: {error}")
