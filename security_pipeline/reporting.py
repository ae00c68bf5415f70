"""
Security metrics reporting.
Aggregates stored events for a time range: volumes by type and severity,
average risk, noisiest source IPs and an hourly timeline.
"""
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List

from sqlalchemy import and_, desc, func, select

from security_pipeline.database.models import SecurityEvent, as_naive_utc
from security_pipeline.observability import get_logger
from security_pipeline.stores.base import BaseStore

logger = get_logger(__name__)

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

TOP_SOURCE_IPS = 10


def hour_bucket(value: datetime) -> str:
    """Timeline key for the hour containing ``value``: ``YYYY-MM-DDTHH``."""
    return value.strftime("%Y-%m-%dT%H")


class MetricsReporter(BaseStore):
    """Read-only aggregate queries over the event store."""

    name = "metrics reporter"

    async def get_metrics(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """
        Summarise events created in ``[start, end]``.

        Returns:
            Dict with total_events, threat_events, events_by_type,
            events_by_severity, average_risk_score, top_source_ips, timeline
        """
        in_range = and_(
            SecurityEvent.created_at >= as_naive_utc(start),
            SecurityEvent.created_at <= as_naive_utc(end),
        )

        async with self._session("get_metrics") as session:
            totals = (
                await session.execute(
                    select(
                        func.count(SecurityEvent.id).label("total"),
                        func.avg(SecurityEvent.risk_score).label("avg_risk"),
                    ).where(in_range)
                )
            ).one()

            threat_count = (
                await session.execute(
                    select(func.count(SecurityEvent.id)).where(
                        and_(in_range, SecurityEvent.is_threat.is_(True))
                    )
                )
            ).scalar() or 0

            type_rows = (
                await session.execute(
                    select(SecurityEvent.event_type, func.count(SecurityEvent.id).label("count"))
                    .where(in_range)
                    .group_by(SecurityEvent.event_type)
                )
            ).all()

            severity_rows = (
                await session.execute(
                    select(SecurityEvent.severity, func.count(SecurityEvent.id).label("count"))
                    .where(in_range)
                    .group_by(SecurityEvent.severity)
                )
            ).all()

            ip_rows = (
                await session.execute(
                    select(SecurityEvent.source_ip, func.count(SecurityEvent.id).label("count"))
                    .where(and_(in_range, SecurityEvent.source_ip.isnot(None)))
                    .group_by(SecurityEvent.source_ip)
                    .order_by(desc("count"), SecurityEvent.source_ip)
                    .limit(TOP_SOURCE_IPS)
                )
            ).all()

            timestamps = (
                await session.execute(select(SecurityEvent.created_at).where(in_range))
            ).scalars().all()

        return {
            "total_events": totals.total or 0,
            "threat_events": threat_count,
            "events_by_type": {row.event_type.value: row.count for row in type_rows},
            "events_by_severity": {row.severity.value: row.count for row in severity_rows},
            "average_risk_score": round(totals.avg_risk, 4) if totals.avg_risk is not None else 0.0,
            "top_source_ips": [{"ip": row.source_ip, "count": row.count} for row in ip_rows],
            "timeline": self._timeline(timestamps),
        }

    def _timeline(self, timestamps: List[datetime]) -> List[Dict[str, Any]]:
        buckets = Counter(hour_bucket(ts) for ts in timestamps)
        return [{"hour": hour, "count": count} for hour, count in sorted(buckets.items())]
