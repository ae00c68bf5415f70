"""Incident management."""
from security_pipeline.incidents.incident_manager import (
    RECIPIENTS_BY_SEVERITY,
    IncidentManager,
    can_transition,
)

__all__ = ["IncidentManager", "RECIPIENTS_BY_SEVERITY", "can_transition"]
