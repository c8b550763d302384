"""
Background jobs that keep the crowding cache warm.

Schedule (America/Chicago)
--------------------------
  daily_seed     - 03:55 every day; scrapes every active route for tomorrow's
                   service day before commuters need it
  delay_refresh  - every 7 minutes; re-scrapes the monitored routes so the
                   predicted (delayed) times stay current
  initial_seed   - once, immediately, when the cache is cold at startup

Jobs run on an APScheduler ``AsyncIOScheduler`` in the app's event loop.
``max_instances=1`` with ``coalesce=True`` means a slow run delays the next
one instead of stacking up. Failures are logged and skipped; the next run is
the retry.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from api.config import settings
from api.database import utc_now
from .base import ScrapeKey
from .config import ALWAYS_SEED_ROUTES, DELAY_REFRESH_ROUTES
from .coordinator import ScrapeCoordinator
from .errors import ScrapeError
from .service_day import TRANSIT_TZ, next_service_day_start, transit_now

logger = logging.getLogger(__name__)


def chunked(items: List, size: int) -> Iterable[List]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class Scheduler:
    """
    Owns the daily seed and delay refresh jobs.

    Args:
        coordinator: Shared scrape coordinator
        route_provider: Optional extra routes worth pre-warming (e.g. from
            the static schedule); merged into the seed set
    """

    def __init__(
        self,
        coordinator: ScrapeCoordinator,
        route_provider: Optional[Callable[[], Iterable[ScrapeKey]]] = None,
        always_seed: Iterable[ScrapeKey] = ALWAYS_SEED_ROUTES,
        delay_routes: Iterable[ScrapeKey] = DELAY_REFRESH_ROUTES,
        seed_chunk_size: int = settings.seed_chunk_size,
        delay_chunk_size: int = settings.delay_refresh_chunk_size,
        chunk_pause: float = settings.chunk_pause_seconds,
        delay_interval: float = settings.delay_refresh_minutes * 60,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.coordinator = coordinator
        self.route_provider = route_provider
        self.always_seed = list(always_seed)
        self.delay_routes = list(delay_routes)
        self.seed_chunk_size = seed_chunk_size
        self.delay_chunk_size = delay_chunk_size
        self.chunk_pause = chunk_pause
        self.delay_interval = delay_interval
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running_jobs: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_scheduler(self) -> AsyncIOScheduler:
        """
        Register the periodic jobs.

        Returns a configured but not yet started ``AsyncIOScheduler``.
        """
        scheduler = AsyncIOScheduler(timezone=TRANSIT_TZ)

        scheduler.add_job(
            self._daily_seed_job,
            trigger=CronTrigger(hour=settings.seed_hour, minute=settings.seed_minute, timezone=TRANSIT_TZ),
            id="daily_seed",
            name="Daily crowding seed",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        scheduler.add_job(
            self._delay_refresh_job,
            trigger=IntervalTrigger(seconds=self.delay_interval, timezone=TRANSIT_TZ),
            id="delay_refresh",
            name="Delay refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
        return scheduler

    def start(self):
        """Start both jobs; runs an immediate seed on a cold cache. Needs a running event loop."""
        if self.running:
            return
        self._scheduler = self.build_scheduler()
        if self._is_cold_start():
            logger.info("Cold start detected (low data). Triggering immediate initial seed...")
            self._scheduler.add_job(
                self._initial_seed_job,
                id="initial_seed",
                name="Initial crowding seed",
                next_run_time=datetime.now(timezone.utc),
                misfire_grace_time=None,
            )
        else:
            logger.info("Data exists. Skipping immediate seed to save resources.")
        self._scheduler.start()

        job = self._scheduler.get_job("daily_seed")
        if job is not None and job.next_run_time is not None:
            logger.info(f"Next daily seed scheduled for {job.next_run_time:%Y-%m-%d %H:%M %Z}")

    async def stop(self):
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            # Cancels running coroutine jobs without waiting for them
            scheduler.shutdown(wait=False)
        jobs = list(self._running_jobs)
        for task in jobs:
            task.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        logger.info("Scheduler stopped")

    def _is_cold_start(self) -> bool:
        try:
            count = self.coordinator.cache.count_fresh(max_age_hours=24, now=self._clock())
        except Exception as e:
            logger.warning(f"Could not verify cache state, defaulting to standard schedule: {e}")
            return False
        logger.info(f"Startup check: found {count} crowding entries younger than 24h")
        return count < settings.cold_start_min_rows

    async def _guarded(self, job, name: str):
        task = asyncio.current_task()
        self._running_jobs.add(task)
        try:
            await job
        except asyncio.CancelledError:
            logger.info(f"Scheduled job '{name}' cancelled")
            raise
        except Exception:
            logger.exception(f"Scheduled job '{name}' crashed")
        finally:
            self._running_jobs.discard(task)

    async def _daily_seed_job(self):
        await self._guarded(self.run_daily_seed(), 'daily seed')

    async def _initial_seed_job(self):
        await self._guarded(self.run_daily_seed(), 'initial seed')

    async def _delay_refresh_job(self):
        await self._guarded(self.run_delay_refresh(), 'delay refresh')

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def seed_routes(self) -> List[ScrapeKey]:
        """Routes used in the lookback window, plus the always-seeded set."""
        keys: List[ScrapeKey] = []
        try:
            keys.extend(self.coordinator.cache.active_keys(days=settings.seed_lookback_days, now=self._clock()))
        except Exception as e:
            logger.warning(f"Could not load active routes from cache: {e}")

        if self.route_provider is not None:
            keys.extend(self.route_provider())
        keys.extend(self.always_seed)

        unique: List[ScrapeKey] = []
        for key in keys:
            if key not in unique:
                unique.append(key)
        return unique

    async def run_daily_seed(self) -> dict:
        """Scrape every active route for the upcoming service day."""
        routes = self.seed_routes()
        target = next_service_day_start(self._clock())
        logger.info(
            f"Starting daily crowding seed: {len(routes)} routes for service day "
            f"{transit_now(target):%Y-%m-%d}"
        )
        summary = await self._run_chunks(routes, self.seed_chunk_size, 'SCHEDULED', target)
        logger.info(f"Daily seed completed: {summary['succeeded']} succeeded, {summary['failed']} failed")
        return summary

    async def run_delay_refresh(self) -> dict:
        """Refresh predicted times on the monitored routes."""
        logger.info(f"Starting delay refresh ({transit_now(self._clock()):%H:%M} local)...")
        summary = await self._run_chunks(self.delay_routes, self.delay_chunk_size, 'DELAY_REFRESH', None)
        logger.info(f"Delay refresh completed: {summary['succeeded']} succeeded, {summary['failed']} failed")
        return summary

    async def _run_chunks(self, routes: List[ScrapeKey], size: int, source: str,
                          date_override: Optional[datetime]) -> dict:
        summary = {'succeeded': 0, 'failed': 0}
        chunks = list(chunked(routes, size))
        for index, chunk in enumerate(chunks):
            results = await asyncio.gather(
                *(
                    self.coordinator.request_data(key, date_override=date_override, source=source, force_refresh=True)
                    for key in chunk
                ),
                return_exceptions=True,
            )
            for key, result in zip(chunk, results):
                if isinstance(result, ScrapeError):
                    summary['failed'] += 1
                    logger.warning(f"[{source}] {key.route}: {result.reason}")
                elif isinstance(result, BaseException):
                    # Includes CancelledError from a scrape cancelled by close()
                    summary['failed'] += 1
                    logger.error(f"[{source}] {key.route}: unexpected error {result!r}")
                else:
                    summary['succeeded'] += 1

            # Small pause between chunks to be gentle on the upstream
            if index < len(chunks) - 1 and self.chunk_pause > 0:
                await asyncio.sleep(self.chunk_pause)
        return summary
