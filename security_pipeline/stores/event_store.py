"""Append-only persistence for security events."""
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy import and_, desc, func, select, update

from security_pipeline.database.models import SecurityEvent, EventType, as_naive_utc
from security_pipeline.observability import get_logger
from security_pipeline.schemas import EventFilters
from security_pipeline.stores.base import BaseStore

logger = get_logger(__name__)

# Columns the pipeline may change after an event is recorded
MUTABLE_EVENT_FIELDS = frozenset({
    "correlation_id",
    "is_threat",
    "risk_score",
    "severity",
    "status",
    "response_actions",
})


class EventStore(BaseStore):
    """Security event store with time-windowed and attribute-filtered queries."""

    name = "event store"

    async def add(self, event: SecurityEvent) -> SecurityEvent:
        """Append a new event.

        Args:
            event: Unsaved event

        Returns:
            The persisted event
        """
        async with self._session("add") as session:
            session.add(event)
            await session.commit()
        logger.debug(f"Stored security event {event.id}")
        return event

    async def get(self, event_id: str) -> Optional[SecurityEvent]:
        """Fetch a single event by id."""
        async with self._session("get") as session:
            return await session.get(SecurityEvent, event_id)

    async def update_fields(self, event_id: str, **fields: Any) -> bool:
        """Update mutable columns of a single event row.

        Args:
            event_id: Event id
            **fields: Column values to set

        Returns:
            True if a row was updated

        Raises:
            ValueError: If an immutable column is targeted
        """
        illegal = set(fields) - MUTABLE_EVENT_FIELDS
        if illegal:
            raise ValueError(f"Immutable event fields: {sorted(illegal)}")

        async with self._session("update") as session:
            result = await session.execute(
                update(SecurityEvent)
                .where(SecurityEvent.id == event_id)
                .values(**fields)
            )
            await session.commit()
            return result.rowcount == 1

    async def assign_correlation_id(self, event_id: str, correlation_id: str) -> bool:
        """Write a correlation id onto an event that has none yet.

        Returns:
            True if the id was written, False if the event already had one
        """
        async with self._session("assign_correlation_id") as session:
            result = await session.execute(
                update(SecurityEvent)
                .where(
                    and_(
                        SecurityEvent.id == event_id,
                        SecurityEvent.correlation_id.is_(None),
                    )
                )
                .values(correlation_id=correlation_id)
            )
            await session.commit()
            return result.rowcount == 1

    async def count_events(
        self,
        since: datetime,
        until: datetime,
        source_ip: Optional[str] = None,
        user_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        exclude_id: Optional[str] = None,
    ) -> int:
        """Count events in a time window matching the given attributes."""
        conditions = [
            SecurityEvent.created_at >= as_naive_utc(since),
            SecurityEvent.created_at <= as_naive_utc(until),
        ]
        if source_ip is not None:
            conditions.append(SecurityEvent.source_ip == source_ip)
        if user_id is not None:
            conditions.append(SecurityEvent.user_id == user_id)
        if event_type is not None:
            conditions.append(SecurityEvent.event_type == event_type)
        if exclude_id is not None:
            conditions.append(SecurityEvent.id != exclude_id)

        async with self._session("count") as session:
            result = await session.execute(
                select(func.count(SecurityEvent.id)).where(and_(*conditions))
            )
            return result.scalar() or 0

    async def recent_user_events(
        self,
        user_id: str,
        since: datetime,
        until: datetime,
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[SecurityEvent]:
        """Most recent events for a user inside a window, newest first."""
        conditions = [
            SecurityEvent.user_id == user_id,
            SecurityEvent.created_at >= as_naive_utc(since),
            SecurityEvent.created_at <= as_naive_utc(until),
        ]
        if exclude_id is not None:
            conditions.append(SecurityEvent.id != exclude_id)

        async with self._session("recent_user_events") as session:
            result = await session.execute(
                select(SecurityEvent)
                .where(and_(*conditions))
                .order_by(desc(SecurityEvent.created_at))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def events_between(self, start: datetime, end: datetime) -> List[SecurityEvent]:
        """All events created in ``[start, end]``, newest first."""
        async with self._session("events_between") as session:
            result = await session.execute(
                select(SecurityEvent)
                .where(
                    and_(
                        SecurityEvent.created_at >= as_naive_utc(start),
                        SecurityEvent.created_at <= as_naive_utc(end),
                    )
                )
                .order_by(desc(SecurityEvent.created_at))
            )
            return list(result.scalars().all())

    async def search(self, filters: EventFilters) -> Tuple[List[SecurityEvent], int]:
        """Filtered, paginated event listing.

        Returns:
            Page of events (newest first) and the total match count
        """
        conditions = []
        if filters.start_date and filters.end_date:
            conditions.append(SecurityEvent.created_at >= as_naive_utc(filters.start_date))
            conditions.append(SecurityEvent.created_at <= as_naive_utc(filters.end_date))
        if filters.event_types:
            conditions.append(SecurityEvent.event_type.in_(filters.event_types))
        if filters.severities:
            conditions.append(SecurityEvent.severity.in_(filters.severities))
        if filters.is_threat is not None:
            conditions.append(SecurityEvent.is_threat == filters.is_threat)

        query = select(SecurityEvent)
        count_query = select(func.count(SecurityEvent.id))
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        query = (
            query.order_by(desc(SecurityEvent.created_at))
            .offset(filters.offset)
            .limit(filters.limit)
        )

        async with self._session("search") as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(query)
            return list(result.scalars().all()), total
