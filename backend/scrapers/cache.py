"""
Durable crowding cache.

Rows are only ever written by a successful scrape; failures leave whatever
was cached before untouched so it can serve as a stale fallback.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Set
import logging

from sqlalchemy import func, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from api.database import CrowdingCache, utc_now
from .base import CrowdingLevel, CrowdingRecord, ScrapeKey
from .config import line_from_trip_id
from .utils.extractors import ExtractedRow

logger = logging.getLogger(__name__)


def _to_db_time(value: datetime) -> datetime:
    """Columns hold naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _to_record(row: CrowdingCache) -> CrowdingRecord:
    return CrowdingRecord(
        trip_id=row.trip_id,
        crowding=CrowdingLevel.parse(row.crowding),
        scheduled_departure=row.scheduled_departure,
        predicted_departure=row.predicted_departure,
        scheduled_arrival=row.scheduled_arrival,
        predicted_arrival=row.predicted_arrival,
        updated_at=_from_db_time(row.updated_at),
    )


class CacheStore:
    """
    TTL-aware store of scraped crowding rows.

    Args:
        session_factory: SQLAlchemy sessionmaker; each call uses its own session
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    def get(self, origin: str, destination: str, max_age_minutes: int,
            now: Optional[datetime] = None) -> List[CrowdingRecord]:
        """Rows updated within the last `max_age_minutes`."""
        cutoff = _to_db_time((now or utc_now()) - timedelta(minutes=max_age_minutes))
        with self._session() as db:
            rows = (
                db.query(CrowdingCache)
                .filter(
                    CrowdingCache.origin == origin,
                    CrowdingCache.destination == destination,
                    CrowdingCache.updated_at > cutoff,
                    CrowdingCache.crowding.isnot(None),
                )
                .order_by(CrowdingCache.trip_id)
                .all()
            )
            return [_to_record(row) for row in rows]

    def get_stale(self, origin: str, destination: str, max_age_hours: int = 24,
                  limit: int = 100, now: Optional[datetime] = None) -> List[CrowdingRecord]:
        """Best-effort rows regardless of the freshness window, newest first."""
        cutoff = _to_db_time((now or utc_now()) - timedelta(hours=max_age_hours))
        with self._session() as db:
            rows = (
                db.query(CrowdingCache)
                .filter(
                    CrowdingCache.origin == origin,
                    CrowdingCache.destination == destination,
                    CrowdingCache.updated_at > cutoff,
                    CrowdingCache.crowding.isnot(None),
                )
                .order_by(CrowdingCache.updated_at.desc(), CrowdingCache.trip_id)
                .limit(limit)
                .all()
            )
            return [_to_record(row) for row in rows]

    def upsert(self, origin: str, destination: str, rows: Iterable[ExtractedRow],
               now: Optional[datetime] = None) -> int:
        """
        Insert or replace rows keyed on (origin, destination, trip_id).

        Returns:
            Number of rows written
        """
        updated_at = _to_db_time(now or utc_now())
        values = [
            {
                'origin': origin,
                'destination': destination,
                'trip_id': row.trip_id,
                'crowding': row.crowding.value,
                'scheduled_departure': row.scheduled_departure,
                'predicted_departure': row.predicted_departure,
                'scheduled_arrival': row.scheduled_arrival,
                'predicted_arrival': row.predicted_arrival,
                'updated_at': updated_at,
            }
            for row in rows
        ]
        if not values:
            return 0

        stmt = sqlite_insert(CrowdingCache).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['origin', 'destination', 'trip_id'],
            set_={
                'crowding': stmt.excluded.crowding,
                'scheduled_departure': stmt.excluded.scheduled_departure,
                'predicted_departure': stmt.excluded.predicted_departure,
                'scheduled_arrival': stmt.excluded.scheduled_arrival,
                'predicted_arrival': stmt.excluded.predicted_arrival,
                'updated_at': stmt.excluded.updated_at,
            },
        )
        with self._session() as db:
            db.execute(stmt)
            db.commit()

        logger.debug(f"Upserted {len(values)} rows for {origin}->{destination}")
        return len(values)

    def count_fresh(self, max_age_hours: int = 24, now: Optional[datetime] = None) -> int:
        cutoff = _to_db_time((now or utc_now()) - timedelta(hours=max_age_hours))
        with self._session() as db:
            return db.query(func.count(CrowdingCache.id)).filter(CrowdingCache.updated_at > cutoff).scalar() or 0

    def active_keys(self, days: int = 7, now: Optional[datetime] = None) -> List[ScrapeKey]:
        """
        Routes cached within the last `days`, line inferred from trip ids.
        Routes whose trips match no known line are skipped.
        """
        cutoff = _to_db_time((now or utc_now()) - timedelta(days=days))
        with self._session() as db:
            rows = (
                db.query(CrowdingCache.origin, CrowdingCache.destination, CrowdingCache.trip_id)
                .filter(CrowdingCache.updated_at > cutoff)
                .distinct()
                .order_by(CrowdingCache.origin, CrowdingCache.destination)
                .all()
            )

        seen: Set[ScrapeKey] = set()
        keys: List[ScrapeKey] = []
        for origin, destination, trip_id in rows:
            line = line_from_trip_id(trip_id)
            if not line:
                continue
            key = ScrapeKey(origin, destination, line)
            if key not in seen:
                seen.add(key)
                keys.append(key)
        return keys

    def mark_stale(self, age_hours: int = 2, now: Optional[datetime] = None) -> int:
        """
        Age rows newer than `age_hours` so the next request re-scrapes while
        the old data stays available as fallback.
        """
        aged = _to_db_time((now or utc_now()) - timedelta(hours=age_hours))
        with self._session() as db:
            result = db.execute(
                update(CrowdingCache)
                .where(CrowdingCache.updated_at > aged)
                .values(updated_at=aged)
            )
            db.commit()
            return result.rowcount or 0
