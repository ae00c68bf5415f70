"""SQLAlchemy models for the detection & response pipeline."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from sqlalchemy import (
    Column,
    String,
    Float,
    Boolean,
    DateTime,
    Text,
    JSON,
    Index,
)
from sqlalchemy import Enum as SAEnum

from security_pipeline.database.connection import Base


def utcnow() -> datetime:
    """Current time as naive UTC, the convention for every stored timestamp."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an aware datetime to the naive UTC storage convention."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class EventType(str, Enum):
    """Security event types."""
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    MALWARE_DETECTION = "malware_detection"
    NETWORK_INTRUSION = "network_intrusion"
    POLICY_VIOLATION = "policy_violation"
    SYSTEM_ANOMALY = "system_anomaly"


class EventSeverity(str, Enum):
    """Security event severity, derived from the risk score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventStatus(str, Enum):
    """Investigation status of a security event."""
    NEW = "new"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class ThreatType(str, Enum):
    """Threat intelligence indicator types."""
    IP_BLACKLIST = "ip_blacklist"
    MALWARE_SIGNATURE = "malware_signature"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    KNOWN_ATTACK = "known_attack"
    IOC = "ioc"  # Indicator of Compromise


class IncidentSeverity(str, Enum):
    """Incident severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, Enum):
    """Incident lifecycle states, in lifecycle order."""
    OPEN = "open"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    RESOLVED = "resolved"
    CLOSED = "closed"


def _enum_type(enum_cls: type) -> SAEnum:
    # Store the enum values (not member names) in a plain VARCHAR column
    return SAEnum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        length=32,
        validate_strings=True,
    )


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SecurityEvent(Base):
    """Append-only security event.

    Note: the 'metadata' JSON column is mapped to the 'event_metadata'
    attribute because 'metadata' is reserved on declarative classes.
    """

    __tablename__ = "security_events"

    id = Column(String(36), primary_key=True, default=new_id)
    event_type = Column(_enum_type(EventType), nullable=False)
    severity = Column(_enum_type(EventSeverity), nullable=False, default=EventSeverity.LOW)
    status = Column(_enum_type(EventStatus), nullable=False, default=EventStatus.NEW)
    description = Column(String(500), nullable=False)
    event_metadata = Column("metadata", JSON)
    source_ip = Column(String(45), index=True)
    user_agent = Column(String(255))
    user_id = Column(String(255), index=True)
    resource = Column(String(255))
    action = Column(String(100))
    is_threat = Column(Boolean, nullable=False, default=False)
    risk_score = Column(Float, nullable=False, default=0.0)
    correlation_id = Column(String(255), index=True)
    response_actions = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_security_events_type_created", "event_type", "created_at"),
        Index("idx_security_events_severity_status", "severity", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        return {
            "id": self.id,
            "event_type": self.event_type.value if self.event_type else None,
            "severity": self.severity.value if self.severity else None,
            "status": self.status.value if self.status else None,
            "description": self.description,
            "metadata": self.event_metadata or {},
            "source_ip": self.source_ip,
            "user_agent": self.user_agent,
            "user_id": self.user_id,
            "resource": self.resource,
            "action": self.action,
            "is_threat": self.is_threat,
            "risk_score": self.risk_score,
            "correlation_id": self.correlation_id,
            "response_actions": list(self.response_actions or []),
            "created_at": _isoformat(self.created_at),
        }


class ThreatIntelligence(Base):
    """Threat intelligence indicator."""

    __tablename__ = "threat_intelligence"

    id = Column(String(36), primary_key=True, default=new_id)
    threat_type = Column(_enum_type(ThreatType), nullable=False)
    indicator = Column(String(500), nullable=False, index=True)
    description = Column(Text)
    confidence = Column(Float, nullable=False, default=0.0)
    source = Column(String(255))
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime)
    indicator_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_threat_intel_type_active", "threat_type", "is_active"),
        Index("idx_threat_intel_type_indicator", "threat_type", "indicator", unique=True),
    )

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        """Check whether the indicator has passed its expiry."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (at or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        return {
            "id": self.id,
            "threat_type": self.threat_type.value if self.threat_type else None,
            "indicator": self.indicator,
            "description": self.description,
            "confidence": self.confidence,
            "source": self.source,
            "is_active": self.is_active,
            "expires_at": _isoformat(self.expires_at),
            "metadata": self.indicator_metadata or {},
            "created_at": _isoformat(self.created_at),
        }


class SecurityIncident(Base):
    """Tracked incident aggregating one or more correlated events."""

    __tablename__ = "security_incidents"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(_enum_type(IncidentSeverity), nullable=False)
    status = Column(_enum_type(IncidentStatus), nullable=False, default=IncidentStatus.OPEN)
    assigned_to = Column(String(255))
    affected_systems = Column(JSON)
    response_actions = Column(JSON)
    correlation_id = Column(String(255), index=True)
    detected_at = Column(DateTime)
    resolved_at = Column(DateTime)
    incident_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_security_incidents_status_correlation", "status", "correlation_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value if self.severity else None,
            "status": self.status.value if self.status else None,
            "assigned_to": self.assigned_to,
            "affected_systems": list(self.affected_systems or []),
            "response_actions": list(self.response_actions or []),
            "correlation_id": self.correlation_id,
            "detected_at": _isoformat(self.detected_at),
            "resolved_at": _isoformat(self.resolved_at),
            "metadata": self.incident_metadata or {},
            "created_at": _isoformat(self.created_at),
        }
