"""
Shared headless browser session.

Owns the single Chromium process used for scraping. Pages are cheap and are
opened per scrape attempt; the browser process is expensive and is reused
until it crashes or is explicitly reset.

Lifecycle: UNINITIALIZED -> LAUNCHING -> READY -> DISCONNECTED -> LAUNCHING ...
"""

import asyncio
import logging
import os
from enum import Enum
from typing import Awaitable, Callable, Optional

from playwright.async_api import async_playwright, Browser, Page, Playwright, Error as PlaywrightError

from api.config import settings
from ..errors import BrowserFatalError

logger = logging.getLogger(__name__)


LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',  # Critical for containers with a small /dev/shm
    '--disable-gpu',
    '--no-zygote',
    '--single-process',
    '--disable-blink-features=AutomationControlled',
]

# Hide automation indicators from simple bot checks
STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => false
    });

    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en']
    });
"""

EXTRA_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept-Encoding': 'gzip, deflate, br',
}


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    DISCONNECTED = "disconnected"


async def _start_playwright() -> Playwright:
    return await async_playwright().start()


class BrowserSessionManager:
    """
    Lifecycle owner for one Chromium process.

    Usage:
        sessions = BrowserSessionManager()
        browser = await sessions.get_session()
        page = await sessions.new_page(browser)
        try:
            ...
        finally:
            await sessions.close_page(page)
    """

    def __init__(
        self,
        headless: bool = settings.browser_headless,
        executable_path: Optional[str] = settings.browser_executable_path,
        timezone_id: str = settings.transit_timezone,
        user_agent: str = settings.scraper_user_agent,
        playwright_factory: Callable[[], Awaitable[Playwright]] = _start_playwright,
        close_timeout: float = 2.0,
    ):
        self.headless = headless
        self.executable_path = executable_path
        self.timezone_id = timezone_id
        self.user_agent = user_agent
        self.close_timeout = close_timeout
        self._playwright_factory = playwright_factory
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._launch_lock = asyncio.Lock()
        self.state = SessionState.UNINITIALIZED
        self.launch_count = 0

    @property
    def is_connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def get_session(self) -> Browser:
        """Return the live browser, launching one if needed."""
        if self.is_connected:
            return self._browser

        # Serialize launches so concurrent callers share one process
        async with self._launch_lock:
            if self.is_connected:
                return self._browser
            if self._browser is not None:
                logger.warning("Found disconnected browser handle, discarding...")
                await self._shutdown()
            return await self._launch()

    async def _launch(self) -> Browser:
        self.state = SessionState.LAUNCHING
        logger.info("Launching shared Chromium instance...")
        try:
            if self._playwright is None:
                self._playwright = await self._playwright_factory()

            launch_options = dict(
                headless=self.headless,
                args=LAUNCH_ARGS,
                timeout=30000,
                env={**os.environ, 'TZ': self.timezone_id},
                handle_sigint=False,
                handle_sigterm=False,
                handle_sighup=False,
            )
            if self.executable_path:
                launch_options['executable_path'] = self.executable_path

            browser = await self._playwright.chromium.launch(**launch_options)
        except Exception as e:
            logger.error(f"Failed to launch browser: {e}")
            self.state = SessionState.DISCONNECTED
            await self._shutdown()
            raise BrowserFatalError(f"browser launch failed: {e}") from e

        browser.on('disconnected', self._on_disconnected)
        self._browser = browser
        self.launch_count += 1
        self.state = SessionState.READY
        logger.info(f"Browser ready (launch #{self.launch_count})")
        return browser

    def _on_disconnected(self, browser: Browser):
        # Only clear the handle if it still points at the browser that died
        if browser is self._browser:
            logger.warning("Shared browser disconnected/closed!")
            self._browser = None
            self.state = SessionState.DISCONNECTED

    async def new_page(self, browser: Browser) -> Page:
        """Open a page in its own context; the caller owns and must close it."""
        context = await browser.new_context(
            viewport={'width': 1920, 'height': 1080},
            user_agent=self.user_agent,
            locale='en-US',
            timezone_id=self.timezone_id,
            extra_http_headers=EXTRA_HEADERS,
        )
        try:
            await context.add_init_script(STEALTH_SCRIPT)
            return await context.new_page()
        except Exception:
            await self._close_quietly(context.close(), "context")
            raise

    async def close_page(self, page: Optional[Page]):
        """Close a page and its context. Never raises."""
        if page is None:
            return
        await self._close_quietly(page.context.close(), "page")

    def classify_error(self, error: Exception, page: Optional[Page] = None) -> Exception:
        """
        Turn a Playwright error into BrowserFatalError when the session itself
        is gone (process crashed, connection dropped or page torn down).
        """
        if isinstance(error, BrowserFatalError):
            return error
        if isinstance(error, PlaywrightError):
            if not self.is_connected or (page is not None and page.is_closed()):
                return BrowserFatalError(str(error).splitlines()[0] if str(error) else 'browser session lost')
        return error

    async def reset_session(self, browser: Optional[Browser] = None):
        """
        Force the process down; the next get_session() relaunches.

        Pass the browser the failing attempt used. When a newer browser has
        already replaced it, that one is healthy and is left alone.
        """
        async with self._launch_lock:
            if browser is not None and self._browser is not None and self._browser is not browser:
                logger.info("Ignoring reset for a browser that was already replaced")
                return
            logger.warning("Resetting shared browser instance...")
            await self._shutdown()
            self.state = SessionState.DISCONNECTED
        logger.info("Browser instance reset complete")

    async def close(self):
        """Shut down browser and driver at process exit."""
        async with self._launch_lock:
            await self._shutdown()
            self.state = SessionState.UNINITIALIZED

    async def _shutdown(self):
        browser, self._browser = self._browser, None
        if browser is not None:
            await self._close_quietly(browser.close(), "browser")

        # Stopping the driver kills any browser process it still owns
        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            await self._close_quietly(playwright.stop(), "playwright")

    async def _close_quietly(self, awaitable, what: str):
        try:
            await asyncio.wait_for(awaitable, timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{what.capitalize()} close timed out, forcing cleanup")
        except Exception as e:
            logger.debug(f"Error closing {what}: {e}")

    def get_status(self) -> dict:
        return {
            'state': self.state.value,
            'connected': self.is_connected,
            'launch_count': self.launch_count,
        }
