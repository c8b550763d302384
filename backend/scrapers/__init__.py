"""
Crowding scraper for the commuter-rail schedule page.

This package provides the acquisition pipeline:
- A shared headless browser (Playwright) with crash recovery
- Bounded concurrency, request coalescing and a circuit breaker
- A freshness-aware SQLite cache and the scheduled jobs that warm it
"""

from .base import CrowdingLevel, CrowdingRecord, ScrapeKey, ScrapeStats
from .errors import ErrorKind, ScrapeError, BrowserFatalError
from .cache import CacheStore
from .coordinator import ScrapeCoordinator
from .scheduler import Scheduler

__all__ = [
    'CrowdingLevel',
    'CrowdingRecord',
    'ScrapeKey',
    'ScrapeStats',
    'ErrorKind',
    'ScrapeError',
    'BrowserFatalError',
    'CacheStore',
    'ScrapeCoordinator',
    'Scheduler',
]
