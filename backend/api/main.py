from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from typing import List, Optional
from datetime import datetime, timezone
import logging
import asyncio
import time
import uuid

from api.database import init_db, engine, SessionLocal
from api.config import settings
from scrapers.base import CrowdingRecord
from scrapers.cache import CacheStore
from scrapers.config import DEFAULT_LINE, SUPPORTED_LINES
from scrapers.coordinator import ScrapeCoordinator
from scrapers.errors import ScrapeError
from scrapers.scheduler import Scheduler
from scrapers.service_day import transit_now
from scrapers.utils.normalizers import normalize_stop_code
from pydantic import BaseModel

# Setup logging directory
settings.log_dir.mkdir(exist_ok=True)

import re

# Custom formatter to strip ANSI color codes from file logs
class ColorStripFormatter(logging.Formatter):
    """Formatter that strips ANSI color codes from log messages."""
    ansi_escape = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')

    def format(self, record):
        message = super().format(record)
        return self.ansi_escape.sub('', message)

# Setup logging with color support for console, stripped for file
file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
file_handler.setFormatter(ColorStripFormatter(settings.log_format))

console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter(settings.log_format))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[file_handler, console_handler],
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)


# Filter to suppress noisy polling endpoint access logs
class PollingEndpointFilter(logging.Filter):
    # Endpoints that poll frequently and clutter logs
    SUPPRESSED_ENDPOINTS = ['/api/scrape-stats']

    def filter(self, record):
        try:
            msg = record.getMessage()
        except Exception:
            msg = str(record.msg)
        for endpoint in self.SUPPRESSED_ENDPOINTS:
            if endpoint in msg:
                return False
        return True

# Apply filter to uvicorn access logger at module load time
uvicorn_access_logger = logging.getLogger("uvicorn.access")
uvicorn_access_logger.addFilter(PollingEndpointFilter())


def build_coordinator() -> ScrapeCoordinator:
    """One coordinator per process; owns the browser, breaker and locks."""
    return ScrapeCoordinator(CacheStore(SessionLocal))


async def cleanup_resources(app: FastAPI):
    """Clean up all resources on shutdown."""
    logger.info("Cleaning up resources...")

    scheduler: Optional[Scheduler] = getattr(app.state, 'scheduler', None)
    if scheduler is not None:
        await scheduler.stop()

    coordinator: Optional[ScrapeCoordinator] = getattr(app.state, 'coordinator', None)
    if coordinator is not None:
        try:
            await asyncio.wait_for(coordinator.close(), timeout=3.0)
            logger.info("Browser closed")
        except asyncio.TimeoutError:
            logger.warning("Browser shutdown timed out, forcing exit")

    try:
        logger.info("Closing database connections...")
        engine.dispose(close=True)
        logger.info("Database connections closed")
    except Exception as e:
        logger.warning(f"Error closing database connections: {e}")

    logger.info("Resource cleanup complete")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info("Crowding Service Starting Up")
    logger.info("=" * 60)
    logger.info(f"Log file: {settings.log_file}")
    logger.info(f"Database: {settings.database_url}")
    init_db()
    logger.info("Database initialized successfully")

    if getattr(app.state, 'coordinator', None) is None:
        app.state.coordinator = build_coordinator()
    app.state.scheduler = None
    if settings.scheduler_enabled:
        app.state.scheduler = Scheduler(app.state.coordinator)
        app.state.scheduler.start()
        logger.info("Scheduled jobs started")
    logger.info("Backend ready to accept requests")

    yield  # Application runs here

    # Shutdown
    logger.info("=" * 60)
    logger.info("Crowding Service Shutting Down")
    logger.info("=" * 60)

    try:
        await asyncio.wait_for(cleanup_resources(app), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown cleanup timed out, forcing exit")
    except Exception as e:
        logger.error(f"Error during shutdown cleanup: {e}")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Crowding API",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models for API responses
class CrowdingEntry(BaseModel):
    trip_id: str
    crowding: str
    scheduled_departure: Optional[str] = None
    predicted_departure: Optional[str] = None
    scheduled_arrival: Optional[str] = None
    predicted_arrival: Optional[str] = None


class CrowdingResponse(BaseModel):
    crowding: List[CrowdingEntry]
    stale: bool = False
    error: Optional[str] = None
    request_id: str
    response_time_ms: int


def get_coordinator(request: Request) -> ScrapeCoordinator:
    coordinator = getattr(request.app.state, 'coordinator', None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Scraper not initialized")
    return coordinator


def to_entries(records: List[CrowdingRecord]) -> List[CrowdingEntry]:
    return [
        CrowdingEntry(
            trip_id=record.trip_id,
            crowding=record.crowding.value,
            scheduled_departure=record.scheduled_departure,
            predicted_departure=record.predicted_departure,
            scheduled_arrival=record.scheduled_arrival,
            predicted_arrival=record.predicted_arrival,
        )
        for record in records
    ]


@app.get("/")
async def root():
    return {"message": "Crowding API", "version": "1.0.0"}


@app.get("/api/crowding", response_model=CrowdingResponse)
async def get_crowding(
    request: Request,
    origin: str = Query('PALATINE', description="Origin stop code"),
    destination: str = Query('OTC', description="Destination stop code"),
    line: str = Query(DEFAULT_LINE, description="Line id"),
    force: bool = Query(False, description="Skip the freshness check"),
):
    """
    Crowding and delay estimates for a route.

    Never fails hard: a failed or slow scrape falls back to cached rows up to
    24 hours old, and to an empty list when there are none.
    """
    request_id = uuid.uuid4().hex[:12]
    started = time.monotonic()
    origin = normalize_stop_code(origin)
    destination = normalize_stop_code(destination)
    line = line.strip().upper()
    if line not in SUPPORTED_LINES:
        raise HTTPException(status_code=400, detail=f"Invalid line ID: {line}")

    coordinator = get_coordinator(request)
    logger.info(f"[CROWDING API] [{request_id}] {origin}->{destination} ({line}) force={force}")

    def respond(records: List[CrowdingRecord], stale: bool = False, error: Optional[str] = None) -> CrowdingResponse:
        elapsed = int((time.monotonic() - started) * 1000)
        logger.info(f"[API] [{request_id}] Sending response after {elapsed}ms ({len(records)} entries)")
        return CrowdingResponse(
            crowding=to_entries(records),
            stale=stale,
            error=error,
            request_id=request_id,
            response_time_ms=elapsed,
        )

    try:
        records = await asyncio.wait_for(
            coordinator.request_crowding_data(origin, destination, line, force_refresh=force),
            timeout=settings.api_request_timeout,
        )
        return respond(records)
    except asyncio.TimeoutError:
        error = f"Request timeout after {settings.api_request_timeout:.0f}s"
        logger.error(f"[API TIMEOUT] [{request_id}] {origin}->{destination}: scrape continues in background")
    except ScrapeError as e:
        error = e.reason
        logger.warning(f"[API] [{request_id}] Scraping failed for {origin}->{destination}: {error}")

    stale = coordinator.cache.get_stale(origin, destination, max_age_hours=settings.stale_max_age_hours)
    if stale:
        logger.info(f"[CROWDING] Falling back to stale cache for {origin}->{destination} ({len(stale)} entries)")
        return respond(stale, stale=True, error=error)

    logger.warning(f"[CROWDING] No data available for {origin}->{destination} (scraping failed, no stale cache)")
    return respond([], error=error)


@app.get("/api/scrape-stats")
async def scrape_stats(request: Request):
    """Scrape diagnostics: success rate, failing routes and breaker state."""
    coordinator = get_coordinator(request)
    status = coordinator.get_status()
    status.update({
        'server_time': datetime.now(timezone.utc).isoformat(),
        'transit_time': transit_now().strftime('%Y-%m-%d %H:%M:%S %Z'),
    })
    return status


@app.post("/api/crowding/mark-stale")
async def mark_crowding_stale(request: Request):
    """Force the next request per route to re-scrape; old rows stay as fallback."""
    coordinator = get_coordinator(request)
    count = coordinator.cache.mark_stale()
    logger.info(f"Crowding cache marked as stale ({count} rows)")
    return {"success": True, "rows": count}


if __name__ == "__main__":
    import uvicorn

    # Configure uvicorn for faster shutdown
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        access_log=True,
        log_config=None,  # Use default but our filter will handle it
        timeout_keep_alive=5,
        timeout_graceful_shutdown=5.0,
    )
