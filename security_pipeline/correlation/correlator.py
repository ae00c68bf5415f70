"""
Event correlation engine.
Groups recent events that share a source IP or a user and tags each group
of related activity with a shared correlation id.
"""
import time
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from security_pipeline.config import settings
from security_pipeline.database.models import SecurityEvent, utcnow
from security_pipeline.exceptions import StoreUnavailableError
from security_pipeline.observability import get_logger, metrics
from security_pipeline.stores.event_store import EventStore

logger = get_logger(__name__)


def generate_correlation_id() -> str:
    """``corr_<epoch ms>_<random>``"""
    return f"corr_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class CorrelationGroup:
    """Events sharing one correlation key."""
    key: str
    events: List[SecurityEvent] = field(default_factory=list)

    def existing_ids(self) -> List[str]:
        return [e.correlation_id for e in self.events if e.correlation_id]

    def uncorrelated(self) -> List[SecurityEvent]:
        return [e for e in self.events if not e.correlation_id]


class EventCorrelator:
    """
    Windowed correlation by shared source IP and shared user.
    Re-running over an unchanged window is a no-op: ids already written are
    never replaced, and groups that already carry an id extend it to their
    uncorrelated members instead of minting a new one.
    """

    def __init__(self, event_store: EventStore, min_group_size: Optional[int] = None):
        self.event_store = event_store
        self.min_group_size = min_group_size or settings.correlation_min_group_size

    def group_events(self, events: List[SecurityEvent]) -> List[CorrelationGroup]:
        """Group by ``ip:<source_ip>`` and, separately, ``user:<user_id>``."""
        groups: Dict[str, CorrelationGroup] = {}
        for event in events:
            keys = []
            if event.source_ip:
                keys.append(f"ip:{event.source_ip}")
            if event.user_id:
                keys.append(f"user:{event.user_id}")
            for key in keys:
                groups.setdefault(key, CorrelationGroup(key=key)).events.append(event)
        return list(groups.values())

    async def correlate(self, window: Optional[timedelta] = None) -> List[str]:
        """
        Correlate events created within the trailing window.

        Args:
            window: Lookback (defaults to the configured correlation window)

        Returns:
            Correlation ids created by this run
        """
        window = window or timedelta(minutes=settings.correlation_window_minutes)
        now = utcnow()
        events = await self.event_store.events_between(now - window, now)

        created: List[str] = []
        for group in self.group_events(events):
            if len(group.events) < self.min_group_size:
                continue

            existing = group.existing_ids()
            pending = group.uncorrelated()
            if not pending:
                continue

            if existing:
                correlation_id = Counter(existing).most_common(1)[0][0]
                written = await self._assign(correlation_id, pending)
                logger.info(
                    f"Extended correlation {correlation_id} to {written} event(s) in group {group.key}"
                )
                continue

            correlation_id = generate_correlation_id()
            written = await self._assign(correlation_id, pending)
            if written:
                created.append(correlation_id)
                metrics.correlation_ids_created_total.inc()
                logger.warning(
                    f"Correlated {written} events in group {group.key}: {correlation_id}"
                )

        return created

    async def _assign(self, correlation_id: str, events: List[SecurityEvent]) -> int:
        written = 0
        for event in events:
            try:
                assigned = await self.event_store.assign_correlation_id(event.id, correlation_id)
            except StoreUnavailableError as e:
                metrics.correlation_write_failures_total.inc()
                logger.error(f"Failed to write correlation id to event {event.id}: {e}")
                continue

            if assigned:
                # Keep the in-memory copy current for events in more than one group
                event.correlation_id = correlation_id
                written += 1
        return written
