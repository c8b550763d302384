"""
Scrape Coordinator - single entry point for crowding data.

Both the HTTP API and the scheduled jobs go through `request_data`, so they
share the page limit, the circuit breaker and request coalescing: a seed
scrape and a user refresh for the same route merge into one browser visit.
"""

import asyncio
import logging
import math
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from api.config import settings
from api.database import utc_now
from .base import Colors, CrowdingRecord, ScrapeKey, ScrapeStats
from .cache import CacheStore
from .circuit_breaker import CircuitBreaker
from .config import METRA, SiteConfig, build_schedule_url
from .crawlers.browser import BrowserSessionManager
from .errors import ErrorKind, ScrapeError
from .limiter import ConcurrencyLimiter
from .service_day import crowding_cache_ttl, current_service_day_start, transit_hour, transit_now
from .utils.extractors import ExtractedRow, MetraScheduleExtractor, ScheduleExtractor

logger = logging.getLogger(__name__)


class ScrapeCoordinator:
    """
    Orchestrates scrape attempts for crowding data.

    Usage:
        coordinator = ScrapeCoordinator(CacheStore(SessionLocal))

        records = await coordinator.request_crowding_data('PALATINE', 'OTC', 'UP-NW')

        # Scheduled seed for tomorrow's service day
        await coordinator.request_data(key, date_override=start, source='SCHEDULED', force_refresh=True)
    """

    def __init__(
        self,
        cache: CacheStore,
        sessions: Optional[BrowserSessionManager] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
        extractor: Optional[ScheduleExtractor] = None,
        stats: Optional[ScrapeStats] = None,
        site: SiteConfig = METRA,
        navigation_timeout: float = settings.navigation_timeout,
        content_timeout: float = settings.content_timeout,
        diagnostic_wait: float = settings.diagnostic_wait,
        count_empty_as_failure: bool = settings.count_empty_as_failure,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.cache = cache
        self.sessions = sessions or BrowserSessionManager()
        self.limiter = limiter or ConcurrencyLimiter(settings.max_concurrent_scrapes)
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_minutes * 60,
        )
        self.extractor = extractor or MetraScheduleExtractor(site)
        self.stats = stats or ScrapeStats()
        self.site = site
        self.navigation_timeout = navigation_timeout
        self.content_timeout = content_timeout
        self.diagnostic_wait = diagnostic_wait
        self.count_empty_as_failure = count_empty_as_failure
        self._clock = clock
        self._locks: Dict[ScrapeKey, asyncio.Task] = {}
        self.navigation_count = 0

    @property
    def in_flight(self) -> List[ScrapeKey]:
        return list(self._locks.keys())

    async def request_crowding_data(self, origin: str, destination: str, line: str,
                                    force_refresh: bool = False) -> List[CrowdingRecord]:
        """Crowding records for a route, from cache when fresh, else scraped."""
        key = ScrapeKey(origin, destination, line)
        return await self.request_data(key, source='API', force_refresh=force_refresh)

    async def request_data(
        self,
        key: ScrapeKey,
        date_override: Optional[datetime] = None,
        source: str = 'API',
        force_refresh: bool = False,
    ) -> List[CrowdingRecord]:
        """
        Return crowding records for `key`, scraping if the cache is not fresh.

        Args:
            key: Route to fetch
            date_override: Schedule time to request instead of the current service day
            source: Caller label for logs (API, SCHEDULED, DELAY_REFRESH)
            force_refresh: Skip the freshness check

        Raises:
            ScrapeError: On any failed attempt, or CIRCUIT_OPEN without an attempt
        """
        if not force_refresh and date_override is None:
            now = self._clock()
            cached = self.cache.get(key.origin, key.destination, crowding_cache_ttl(now), now=now)
            if cached:
                logger.info(f"Cache HIT for {key}: {len(cached)} trains")
                return cached

        task = self._locks.get(key)
        if task is not None:
            logger.info(f"[{source}] Joining in-flight scrape for {key}")
        else:
            if self.breaker.is_open():
                remaining = self.breaker.remaining_seconds()
                minutes = math.ceil(remaining / 60)
                logger.warning(f"[{source}] Circuit open, scraping paused for {minutes}m: {key}")
                raise ScrapeError(
                    ErrorKind.CIRCUIT_OPEN,
                    f"Scraping paused for {minutes}m",
                    retry_after=remaining,
                )
            task = asyncio.ensure_future(self._scrape(key, date_override, source))
            self._locks[key] = task
            task.add_done_callback(self._settled)

        # Shielded so a caller that gives up never cancels the shared scrape
        return await asyncio.shield(task)

    @staticmethod
    def _settled(task: asyncio.Task):
        # Mark the outcome as retrieved even if every caller timed out
        if not task.cancelled():
            task.exception()

    async def _scrape(self, key: ScrapeKey, date_override: Optional[datetime], source: str) -> List[CrowdingRecord]:
        log = logging.getLogger(f"scraper.{source.lower()}")
        current = asyncio.current_task()
        try:
            async with self.limiter.slot():
                return await self._attempt(key, date_override, log)
        finally:
            if self._locks.get(key) is current:
                del self._locks[key]

    async def _attempt(self, key: ScrapeKey, date_override: Optional[datetime], log: logging.Logger) -> List[CrowdingRecord]:
        target = self._target_time(date_override, log)

        browser = None
        page = None
        try:
            browser = await self.sessions.get_session()
            page = await self.sessions.new_page(browser)
            rows = await self._navigate_and_extract(page, key, target, log)
            now = self._clock()
            self.cache.upsert(key.origin, key.destination, rows, now=now)
        except Exception as exc:
            error = self._classify(exc, page)
            await self.sessions.close_page(page)
            page = None
            await self._record_failure(key, error, log, browser)
            if error is exc:
                raise
            raise error from exc
        finally:
            await self.sessions.close_page(page)

        self.stats.record_success(key)
        self.breaker.record_success()
        log.info(f"{Colors.green('SUCCESS')} {key}: {len(rows)} trains")
        log.info(f"[STATS] {self.stats.summary()}")

        return [
            CrowdingRecord(
                trip_id=row.trip_id,
                crowding=row.crowding,
                scheduled_departure=row.scheduled_departure,
                predicted_departure=row.predicted_departure,
                scheduled_arrival=row.scheduled_arrival,
                predicted_arrival=row.predicted_arrival,
                updated_at=now,
            )
            for row in rows
        ]

    def _target_time(self, date_override: Optional[datetime], log: logging.Logger) -> datetime:
        if date_override is not None:
            log.info(f"Using schedule override: {transit_now(date_override):%Y-%m-%d %H:%M %Z}")
            return date_override

        now = self._clock()
        hour = transit_hour(now)
        if hour < settings.service_day_rollover_hour:
            log.info(f"Early morning detected ({hour} AM). Using YESTERDAY'S schedule.")
        return current_service_day_start(now)

    async def _navigate_and_extract(self, page, key: ScrapeKey, target: datetime,
                                    log: logging.Logger) -> List[ExtractedRow]:
        url = build_schedule_url(key.origin, key.destination, key.line, int(target.timestamp()), self.site)

        self.navigation_count += 1
        log.info(f"Navigating to {self.site.name} for {key} (attempt #{self.stats.total_attempts + 1})")
        started = time.monotonic()
        try:
            response = await page.goto(
                url,
                wait_until='domcontentloaded',
                timeout=int(self.navigation_timeout * 1000),
            )
        except PlaywrightTimeoutError as e:
            raise ScrapeError(ErrorKind.NAV_TIMEOUT, f"navigation exceeded {self.navigation_timeout:.0f}s") from e
        log.info(f"[TIMING] Navigation took {(time.monotonic() - started) * 1000:.0f}ms for {key.route}")

        status = response.status if response is not None else 0
        title = await page.title()
        if status == 403 or self._is_block_title(title):
            log.error(f"{Colors.red('WAF BLOCKED')} {key} (HTTP {status})")
            raise ScrapeError(ErrorKind.WAF_BLOCK, f"HTTP {status}")
        if status >= 400:
            raise ScrapeError(ErrorKind.UPSTREAM_ERROR, f"HTTP {status}")

        await self._wait_for_content(page, key, log)

        html = await page.content()
        rows = self.extractor.extract(html, key)
        if not rows:
            log.warning(f"No crowding data extracted for {key}")
            raise ScrapeError(ErrorKind.NO_DATA_EXTRACTED, f"no trip rows for {key.route}")
        return rows

    def _is_block_title(self, title: Optional[str]) -> bool:
        title = title or ''
        return any(marker in title for marker in self.site.block_titles)

    async def _wait_for_content(self, page, key: ScrapeKey, log: logging.Logger):
        selector = self.site.selectors['trip_row']
        started = time.monotonic()
        try:
            await page.wait_for_selector(selector, timeout=int(self.content_timeout * 1000))
            log.info(f"[TIMING] {selector} appeared after {(time.monotonic() - started) * 1000:.0f}ms for {key.route}")
            return
        except PlaywrightTimeoutError:
            log.warning(f"[TIMING] {selector} TIMEOUT after {(time.monotonic() - started) * 1000:.0f}ms for {key.route}")

        # One extended look so the logs show whether a longer timeout would help
        await asyncio.sleep(self.diagnostic_wait)
        count = await page.locator(selector).count()
        log.info(f"[TIMING] After +{self.diagnostic_wait:.0f}s extra wait: found {count} {selector} elements for {key.route}")
        if count == 0:
            raise ScrapeError(ErrorKind.CONTENT_TIMEOUT, f"{selector} not found within {self.content_timeout:.0f}s")
        log.info(
            f"[TIMING] RECOMMENDATION: Increase timeout! Data appeared after "
            f"{(time.monotonic() - started) * 1000:.0f}ms total"
        )

    def _classify(self, exc: Exception, page) -> ScrapeError:
        # Must run before the page is closed, or every error looks fatal
        error = self.sessions.classify_error(exc, page)
        if isinstance(error, ScrapeError):
            return error
        if isinstance(exc, PlaywrightTimeoutError):
            return ScrapeError(ErrorKind.NAV_TIMEOUT, str(exc).splitlines()[0] if str(exc) else '')
        if isinstance(exc, PlaywrightError):
            return ScrapeError(ErrorKind.UPSTREAM_ERROR, str(exc).splitlines()[0] if str(exc) else '')
        return ScrapeError(ErrorKind.UNEXPECTED, f"{type(exc).__name__}: {exc}")

    async def _record_failure(self, key: ScrapeKey, error: ScrapeError, log: logging.Logger, browser=None):
        log.error(f"{Colors.red('FAILED')} {key}: {error.reason}")

        if error.kind is ErrorKind.BROWSER_FATAL:
            log.warning("Browser appears to have crashed. Resetting instance.")
            await self.sessions.reset_session(browser)

        if error.kind is ErrorKind.NO_DATA_EXTRACTED and not self.count_empty_as_failure:
            log.info("Empty extraction not counted against the circuit breaker")
        else:
            self.breaker.record_failure(error.reason)

        self.stats.record_failure(key, error.reason)
        log.info(f"[STATS] {self.stats.summary()}")

    def get_status(self) -> dict:
        return {
            'stats': self.stats.to_dict(),
            'circuit_breaker': self.breaker.get_status(),
            'limiter': self.limiter.get_status(),
            'browser': self.sessions.get_status(),
            'in_flight': [str(key) for key in self.in_flight],
        }

    async def close(self):
        """Cancel in-flight scrapes and shut the browser down."""
        tasks = list(self._locks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.sessions.close()
