from pathlib import Path

from sqlalchemy import create_engine, event, Column, Integer, String, DateTime, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime, timezone


def utc_now():
    """Return current UTC time (timezone-aware). Replaces deprecated datetime.utcnow()."""
    return datetime.now(timezone.utc)


Base = declarative_base()

CROWDING_LEVELS = ('low', 'some', 'moderate', 'high')


class CrowdingCache(Base):
    """Scraped crowding and delay data, one row per (origin, destination, trip)."""
    __tablename__ = 'crowding_cache'

    id = Column(Integer, primary_key=True)
    origin = Column(String, nullable=False)
    destination = Column(String, nullable=False)
    trip_id = Column(String, nullable=False)
    crowding = Column(String)

    # Time strings exactly as shown upstream (e.g. "8:33 PM")
    scheduled_departure = Column(String)
    predicted_departure = Column(String)
    scheduled_arrival = Column(String)
    predicted_arrival = Column(String)

    # Naive UTC; drives both freshness and staleness queries
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('origin', 'destination', 'trip_id', name='uq_crowding_route_trip'),
        CheckConstraint(
            "crowding IN ('low', 'some', 'moderate', 'high')",
            name='ck_crowding_level',
        ),
        Index('ix_crowding_origin_dest', 'origin', 'destination'),
        Index('ix_crowding_trip', 'trip_id'),
        Index('ix_crowding_updated', 'updated_at'),
    )


def set_sqlite_pragma(dbapi_connection, connection_record):
    """WAL lets readers proceed while a scrape commits its upsert."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


# Database setup - import settings for database URL
from api.config import settings

engine = create_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,    # Verify connections before use (handles stale connections)
    pool_recycle=3600,     # Recycle connections after 1 hour
)
if engine.dialect.name == 'sqlite':
    event.listen(engine, 'connect', set_sqlite_pragma)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    database = engine.url.database
    if engine.dialect.name == 'sqlite' and database and database != ':memory:':
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
