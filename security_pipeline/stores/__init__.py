"""Persistence stores for events, threat intelligence and incidents."""
from security_pipeline.stores.event_store import EventStore
from security_pipeline.stores.incident_store import IncidentStore
from security_pipeline.stores.threat_intel_store import ThreatIntelStore

__all__ = ["EventStore", "IncidentStore", "ThreatIntelStore"]
