"""Incident persistence."""
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import and_, desc, func, select, update

from security_pipeline.database.models import (
    IncidentStatus,
    SecurityIncident,
    as_naive_utc,
    utcnow,
)
from security_pipeline.observability import get_logger
from security_pipeline.schemas import IncidentFilters
from security_pipeline.stores.base import BaseStore

logger = get_logger(__name__)


class IncidentStore(BaseStore):
    """Security incident store."""

    name = "incident store"

    async def add(self, incident: SecurityIncident) -> SecurityIncident:
        """Persist a new incident in a single write."""
        async with self._session("add") as session:
            session.add(incident)
            await session.commit()
        return incident

    async def get(self, incident_id: str) -> Optional[SecurityIncident]:
        """Fetch an incident by id."""
        async with self._session("get") as session:
            return await session.get(SecurityIncident, incident_id)

    async def find_open_by_correlation(self, correlation_id: str) -> Optional[SecurityIncident]:
        """Return the OPEN incident tracking a correlation id, if any."""
        async with self._session("find_open_by_correlation") as session:
            result = await session.execute(
                select(SecurityIncident)
                .where(
                    and_(
                        SecurityIncident.correlation_id == correlation_id,
                        SecurityIncident.status == IncidentStatus.OPEN,
                    )
                )
                .order_by(desc(SecurityIncident.created_at))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update_fields(
        self,
        incident_id: str,
        allowed_statuses: Optional[Sequence[IncidentStatus]] = None,
        stamp_resolved: bool = False,
        **fields: Any,
    ) -> bool:
        """Update columns of a single incident row.

        With ``allowed_statuses`` the row is only written while its current
        status is one of them. ``stamp_resolved`` sets ``resolved_at`` only
        if it is still empty.

        Returns:
            True if the row was written
        """
        fields.setdefault("updated_at", utcnow())
        if stamp_resolved:
            fields["resolved_at"] = func.coalesce(SecurityIncident.resolved_at, fields["updated_at"])

        conditions = [SecurityIncident.id == incident_id]
        if allowed_statuses is not None:
            conditions.append(SecurityIncident.status.in_(list(allowed_statuses)))

        async with self._session("update") as session:
            result = await session.execute(
                update(SecurityIncident)
                .where(and_(*conditions))
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def search(self, filters: IncidentFilters) -> Tuple[List[SecurityIncident], int]:
        """Filtered, paginated incident listing, newest first."""
        conditions = []
        if filters.statuses:
            conditions.append(SecurityIncident.status.in_(filters.statuses))
        if filters.severities:
            conditions.append(SecurityIncident.severity.in_(filters.severities))
        if filters.start_date and filters.end_date:
            conditions.append(SecurityIncident.created_at >= as_naive_utc(filters.start_date))
            conditions.append(SecurityIncident.created_at <= as_naive_utc(filters.end_date))

        query = select(SecurityIncident)
        count_query = select(func.count(SecurityIncident.id))
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        query = (
            query.order_by(desc(SecurityIncident.created_at))
            .offset(filters.offset)
            .limit(filters.limit)
        )

        async with self._session("search") as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(query)
            return list(result.scalars().all()), total
