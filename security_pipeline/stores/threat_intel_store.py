"""Threat intelligence indicator store."""
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, desc, or_, select

from security_pipeline.database.models import ThreatIntelligence, as_naive_utc, utcnow
from security_pipeline.observability import get_logger
from security_pipeline.schemas import ThreatIndicatorCreate
from security_pipeline.stores.base import BaseStore

logger = get_logger(__name__)


class ThreatIntelStore(BaseStore):
    """Active indicator list fed in bulk by a threat feed collaborator.

    Expired indicators are treated as inactive at query time even when the
    feed has not flipped ``is_active`` yet.
    """

    name = "threat intelligence store"

    def _active_condition(self, at: datetime):
        return and_(
            ThreatIntelligence.is_active.is_(True),
            or_(
                ThreatIntelligence.expires_at.is_(None),
                ThreatIntelligence.expires_at > as_naive_utc(at),
            ),
        )

    async def upsert_many(self, indicators: Sequence[ThreatIndicatorCreate]) -> int:
        """Insert new indicators or refresh existing ones.

        Indicators are keyed by ``(threat_type, indicator)``.

        Args:
            indicators: Feed entries

        Returns:
            Number of indicators written
        """
        async with self._session("upsert") as session:
            for item in indicators:
                result = await session.execute(
                    select(ThreatIntelligence).where(
                        and_(
                            ThreatIntelligence.threat_type == item.threat_type,
                            ThreatIntelligence.indicator == item.indicator,
                        )
                    )
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = ThreatIntelligence(
                        threat_type=item.threat_type,
                        indicator=item.indicator,
                    )
                    session.add(record)
                    await session.flush()

                record.description = item.description
                record.confidence = item.confidence
                record.source = item.source
                record.is_active = item.is_active
                record.expires_at = as_naive_utc(item.expires_at)
                record.indicator_metadata = dict(item.metadata)

            await session.commit()

        logger.info(f"Updated threat intelligence with {len(indicators)} indicators")
        return len(indicators)

    async def find_active(
        self,
        indicator: str,
        at: Optional[datetime] = None,
    ) -> Optional[ThreatIntelligence]:
        """Return the highest-confidence active record for an indicator.

        Args:
            indicator: IP address, signature or pattern to look up
            at: Reference time for expiry (default: now)
        """
        async with self._session("find_active") as session:
            result = await session.execute(
                select(ThreatIntelligence)
                .where(
                    and_(
                        ThreatIntelligence.indicator == indicator,
                        self._active_condition(at or utcnow()),
                    )
                )
                .order_by(desc(ThreatIntelligence.confidence), desc(ThreatIntelligence.created_at))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_active(self, at: Optional[datetime] = None) -> List[ThreatIntelligence]:
        """All active, unexpired indicators, newest first."""
        async with self._session("list_active") as session:
            result = await session.execute(
                select(ThreatIntelligence)
                .where(self._active_condition(at or utcnow()))
                .order_by(desc(ThreatIntelligence.created_at))
            )
            return list(result.scalars().all())
