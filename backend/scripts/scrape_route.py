#!/usr/bin/env python3
"""
Manual probe for the crowding scraper.

Usage:
    cd backend
    python -m scripts.scrape_route PALATINE OTC [--line UP-NW]

Examples:
    python -m scripts.scrape_route PALATINE OTC            # Scrape one route, print trains
    python -m scripts.scrape_route PALATINE OTC --cached   # Cache lookup only
    python -m scripts.scrape_route --seed                  # One daily seed pass
    python -m scripts.scrape_route --routes                # List pre-warmed routes
"""

import asyncio
import argparse
import logging
import json

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from api.database import SessionLocal, init_db
from scrapers.base import ScrapeKey, records_to_dicts
from scrapers.cache import CacheStore
from scrapers.config import DEFAULT_LINE, KEY_ROUTES, LINE_NAMES, SUPPORTED_LINES
from scrapers.coordinator import ScrapeCoordinator
from scrapers.errors import ScrapeError
from scrapers.scheduler import Scheduler
from scrapers.service_day import crowding_cache_ttl


async def scrape_route(coordinator: ScrapeCoordinator, key: ScrapeKey, as_json: bool = False):
    """Force one scrape and print the trains found."""
    print(f"\n{'='*60}")
    print(f"Scraping {key}")
    print(f"{'='*60}\n")

    try:
        records = await coordinator.request_data(key, source='CLI', force_refresh=True)
    except ScrapeError as e:
        print(f"FAILED: {e.reason}")
        return

    if as_json:
        print(json.dumps(records_to_dicts(records), indent=2))
        return

    print(f"Found {len(records)} trains\n")
    for record in records:
        departure = record.scheduled_departure or '-'
        if record.predicted_departure:
            departure = f"{departure} -> {record.predicted_departure}"
        arrival = record.scheduled_arrival or '-'
        if record.predicted_arrival:
            arrival = f"{arrival} -> {record.predicted_arrival}"
        print(f"  {record.trip_id:24} {record.crowding.value:9} dep {departure:22} arr {arrival}")


def show_cached(cache: CacheStore, key: ScrapeKey):
    """Print what the cache would serve right now."""
    fresh = cache.get(key.origin, key.destination, crowding_cache_ttl())
    stale = cache.get_stale(key.origin, key.destination)
    print(f"\n{key}: {len(fresh)} fresh rows, {len(stale)} rows within 24h")
    for record in fresh or stale:
        print(f"  {record.trip_id:24} {record.crowding.value:9} updated {record.updated_at:%Y-%m-%d %H:%M:%S}")


def list_routes():
    """List the routes that are always seeded and monitored."""
    print(f"\n{'='*60}")
    print("Pre-warmed routes")
    print(f"{'='*60}\n")

    for key in KEY_ROUTES:
        print(f"  {key.route:22} {key.line:6} {LINE_NAMES.get(key.line, '')}")


async def main():
    parser = argparse.ArgumentParser(description='Probe the crowding scraper')
    parser.add_argument('origin', nargs='?', help='Origin stop code (e.g., PALATINE)')
    parser.add_argument('destination', nargs='?', help='Destination stop code (e.g., OTC)')
    parser.add_argument('--line', default=DEFAULT_LINE, choices=SUPPORTED_LINES, help='Line id')
    parser.add_argument('--cached', action='store_true', help='Show cached rows, do not scrape')
    parser.add_argument('--json', action='store_true', help='Print records as JSON')
    parser.add_argument('--seed', action='store_true', help='Run one daily seed pass')
    parser.add_argument('--routes', action='store_true', help='List pre-warmed routes')

    args = parser.parse_args()

    if args.routes:
        list_routes()
        return

    init_db()
    cache = CacheStore(SessionLocal)

    if args.seed:
        coordinator = ScrapeCoordinator(cache)
        try:
            summary = await Scheduler(coordinator).run_daily_seed()
            print(f"\nSeed finished: {summary['succeeded']} succeeded, {summary['failed']} failed")
            print(coordinator.stats.summary())
        finally:
            await coordinator.close()
        return

    if not args.origin or not args.destination:
        parser.print_help()
        print("\nExample: python -m scripts.scrape_route PALATINE OTC --line UP-NW")
        return

    key = ScrapeKey(args.origin, args.destination, args.line)

    if args.cached:
        show_cached(cache, key)
        return

    coordinator = ScrapeCoordinator(cache)
    try:
        await scrape_route(coordinator, key, as_json=args.json)
    finally:
        await coordinator.close()


if __name__ == '__main__':
    asyncio.run(main())
