"""
Pytest configuration and fixtures for crowding service tests.

No network or real browser: the Playwright driver is replaced by the
in-memory doubles below, which BrowserSessionManager drives exactly like the
real `async_playwright()` handle.
"""

import asyncio
from collections import deque

import pytest
from fastapi.testclient import TestClient
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.database import Base
from api.main import app


# Create an in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ============================================================
# SCHEDULE PAGE HTML
# ============================================================

def build_schedule_html(trips, origin='PALATINE', destination='OTC', line='UP-NW'):
    """
    Render a schedule page the way the upstream does.

    Each trip is a dict with `number` and optional `crowding`,
    `departure_delay` / `arrival_delay` as (scheduled, predicted) pairs.
    """
    rows = []
    for trip in trips:
        trip_id = f"{line}_UNW{trip['number']}_V1_A"
        crowding = trip.get('crowding')
        if crowding == 'nested-high':
            indicator = '<div class="trip--crowding"><span class="trip--crowding-high"></span></div>'
        elif crowding:
            indicator = f'<div class="trip--crowding trip--crowding-{crowding}"></div>'
        else:
            indicator = '<div class="trip--crowding"></div>'

        cells = []
        for stop, delay in ((origin, trip.get('departure_delay')), (destination, trip.get('arrival_delay'))):
            if delay:
                text = f'<span class="strike-out">{delay[0]}</span> <span>{delay[1]}</span>'
            else:
                text = '7:00 AM'
            cells.append(f'<td class="stop" id="{trip_id}-{stop}"><div class="stop--text">{text}</div></td>')

        rows.append(f'<tr class="trip-row" id="{trip_id}"><td>{indicator}</td>{"".join(cells)}</tr>')

    return f"<html><head><title>Schedules | Metra</title></head><body><table>{''.join(rows)}</table></body></html>"


def palatine_trips():
    """20 trains, 3 delayed at departure and 1 at arrival."""
    trips = [{'number': 600 + i} for i in range(20)]
    trips[0]['crowding'] = 'high'
    trips[1]['crowding'] = 'moderate'
    trips[2]['crowding'] = 'some'
    trips[3]['crowding'] = 'nested-high'
    trips[4]['departure_delay'] = ('7:02 AM', '7:09 AM')
    trips[5]['departure_delay'] = ('7:32 AM', '7:35 AM')
    trips[6]['departure_delay'] = ('8:02 AM', '8:20 AM')
    trips[7]['arrival_delay'] = ('8:50 AM', '9:08 AM')
    return trips


# ============================================================
# PLAYWRIGHT DOUBLES
# ============================================================

class FakeResponse:
    def __init__(self, status=200):
        self.status = status


class FakeLocator:
    def __init__(self, count):
        self._count = count

    async def count(self):
        return self._count


class FakePage:
    """
    Page double.

    Args:
        rows_present: Whether wait_for_selector finds trip rows in time
        late_rows: Row count seen by the diagnostic look after a content timeout
        on_goto: Hook called with the page during navigation
    """

    def __init__(self, html='', status=200, title='Schedules | Metra', rows_present=True,
                 late_rows=0, goto_delay=0.0, goto_error=None, on_goto=None):
        self.html = html
        self.status = status
        self._title = title
        self.rows_present = rows_present
        self.late_rows = late_rows
        self.goto_delay = goto_delay
        self.goto_error = goto_error
        self.on_goto = on_goto
        self.context = None
        self.closed = False
        self.visited = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        if self.on_goto:
            self.on_goto(self)
        if self.goto_error:
            raise self.goto_error
        return FakeResponse(self.status)

    async def title(self):
        return self._title

    async def wait_for_selector(self, selector, timeout=None):
        if not self.rows_present:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    def locator(self, selector):
        return FakeLocator(self.late_rows)

    async def content(self):
        return self.html

    def is_closed(self):
        return self.closed


class FakeContext:
    def __init__(self, browser, options):
        self.browser = browser
        self.options = options
        self.init_scripts = []
        self.page = None

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        page = self.browser.driver.next_page()
        page.context = self
        self.page = page
        self.browser.driver.page_opened(page)
        return page

    async def close(self):
        if self.page is not None and not self.page.closed:
            self.page.closed = True
            self.browser.driver.page_closed(self.page)


class FakeBrowser:
    def __init__(self, driver):
        self.driver = driver
        self.connected = True
        self.handlers = []
        self.contexts = []

    def on(self, event, handler):
        if event == 'disconnected':
            self.handlers.append(handler)

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    def crash(self):
        if self.connected:
            self.connected = False
            for handler in self.handlers:
                handler(self)

    async def close(self):
        self.crash()


class FakeChromium:
    def __init__(self, driver):
        self.driver = driver

    async def launch(self, **options):
        # Yield so concurrent callers can race for the launch
        await asyncio.sleep(0.01)
        self.driver.launches += 1
        self.driver.launch_options = options
        if self.driver.launch_error:
            raise self.driver.launch_error
        browser = FakeBrowser(self.driver)
        self.driver.browsers.append(browser)
        return browser


class FakePlaywright:
    """Stands in for the handle returned by `async_playwright().start()`."""

    def __init__(self):
        self.chromium = FakeChromium(self)
        self.starts = 0
        self.stops = 0
        self.launches = 0
        self.launch_options = None
        self.launch_error = None
        self.browsers = []
        self.pages = deque()
        self.default_html = build_schedule_html(palatine_trips())
        self.pages_opened = 0
        self.open_pages = 0
        self.peak_open_pages = 0

    async def start(self):
        self.starts += 1
        return self

    async def stop(self):
        self.stops += 1

    def queue_pages(self, *pages):
        self.pages.extend(pages)

    def next_page(self):
        if self.pages:
            return self.pages.popleft()
        return FakePage(html=self.default_html)

    def page_opened(self, page):
        self.pages_opened += 1
        self.open_pages += 1
        self.peak_open_pages = max(self.peak_open_pages, self.open_pages)

    def page_closed(self, page):
        self.open_pages -= 1


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def cache(db_session):
    """CacheStore bound to the in-memory database."""
    from scrapers.cache import CacheStore

    return CacheStore(TestingSessionLocal)


@pytest.fixture
def driver():
    return FakePlaywright()


@pytest.fixture
def sessions(driver):
    from scrapers.crawlers.browser import BrowserSessionManager

    return BrowserSessionManager(playwright_factory=driver.start, close_timeout=0.5)


@pytest.fixture
def coordinator(cache, sessions):
    """Coordinator with short timeouts and no diagnostic pause."""
    from scrapers.coordinator import ScrapeCoordinator

    return ScrapeCoordinator(
        cache,
        sessions=sessions,
        navigation_timeout=1.0,
        content_timeout=1.0,
        diagnostic_wait=0,
    )


@pytest.fixture(scope="function")
def client(db_session, coordinator):
    """Create a test client with the coordinator override."""
    app.state.coordinator = coordinator

    # Use TestClient directly without context manager so the lifespan
    # (real browser, scheduler) never starts
    test_client = TestClient(app)
    yield test_client

    app.state.coordinator = None
