"""Typed scrape failures."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    WAF_BLOCK = "WAF_BLOCK"
    NAV_TIMEOUT = "NAV_TIMEOUT"
    CONTENT_TIMEOUT = "CONTENT_TIMEOUT"
    NO_DATA_EXTRACTED = "NO_DATA_EXTRACTED"
    BROWSER_FATAL = "BROWSER_FATAL"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UNEXPECTED = "UNEXPECTED"


class ScrapeError(Exception):
    """
    A failed scrape attempt.

    Args:
        kind: Failure category
        message: Human readable detail
        retry_after: Seconds until the circuit closes (CIRCUIT_OPEN only)
    """

    def __init__(self, kind: ErrorKind, message: str = '', retry_after: Optional[float] = None):
        self.kind = kind
        self.message = message or kind.value
        self.retry_after = retry_after
        super().__init__(f"{kind.value}: {self.message}")

    @property
    def reason(self) -> str:
        return f"{self.kind.value} ({self.message})" if self.message != self.kind.value else self.kind.value


class BrowserFatalError(ScrapeError):
    """The browser process crashed, disconnected or lost the page mid-attempt."""

    def __init__(self, message: str = 'browser session lost'):
        super().__init__(ErrorKind.BROWSER_FATAL, message)
