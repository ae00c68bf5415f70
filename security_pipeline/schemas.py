"""Pydantic schemas for pipeline inputs, filters and alert rules."""
import ipaddress
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from security_pipeline.database.models import (
    EventSeverity,
    EventType,
    IncidentSeverity,
    IncidentStatus,
    ThreatType,
)


class SecurityEventCreate(BaseModel):
    """Ingest payload for a security event."""

    model_config = ConfigDict(extra="forbid")

    event_type: EventType = Field(..., description="Security event type")
    description: str = Field(..., min_length=1, max_length=500, description="What happened")
    source_ip: Optional[str] = Field(None, max_length=45, description="Originating IP address")
    user_agent: Optional[str] = Field(None, max_length=255, description="Client user agent")
    user_id: Optional[str] = Field(None, max_length=255, description="Acting user")
    resource: Optional[str] = Field(None, max_length=255, description="Targeted resource")
    action: Optional[str] = Field(None, max_length=100, description="Attempted action")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Opaque event context")

    @field_validator("source_ip")
    @classmethod
    def validate_source_ip(cls, v):
        """Validate that the source IP parses as IPv4 or IPv6."""
        if v is None:
            return v
        v = v.strip()
        try:
            ipaddress.ip_address(v)
        except ValueError:
            raise ValueError(f"Invalid IP address: {v}")
        return v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        """Reject whitespace-only descriptions."""
        if not v.strip():
            raise ValueError("Description must not be blank")
        return v


class ThreatIndicatorCreate(BaseModel):
    """Threat intelligence feed entry."""

    threat_type: ThreatType
    indicator: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    confidence: float = Field(..., ge=0, le=1, description="Feed confidence (0-1)")
    source: Optional[str] = Field(None, max_length=255)
    is_active: bool = True
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EventFilters(BaseModel):
    """Query filters for stored security events."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    event_types: List[EventType] = Field(default_factory=list)
    severities: List[EventSeverity] = Field(default_factory=list)
    is_threat: Optional[bool] = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class IncidentFilters(BaseModel):
    """Query filters for incidents."""

    statuses: List[IncidentStatus] = Field(default_factory=list)
    severities: List[IncidentSeverity] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ChannelType(str, Enum):
    """Notification channel types."""
    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    SMS = "sms"


class AlertChannel(BaseModel):
    """A notification target with channel-specific configuration."""

    model_config = ConfigDict(frozen=True)

    type: ChannelType
    config: Dict[str, Any] = Field(default_factory=dict)


class AlertRuleCreate(BaseModel):
    """Operator-supplied alert rule definition."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    condition: str = Field(..., min_length=1, max_length=255)
    severity: EventSeverity = EventSeverity.MEDIUM
    channels: List[AlertChannel] = Field(default_factory=list)
    enabled: bool = True


class AlertRule(AlertRuleCreate):
    """Alert rule held by the router."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_channels(self):
        """Rules must notify somewhere."""
        if not self.channels:
            raise ValueError(f"Alert rule {self.id} has no channels")
        return self
