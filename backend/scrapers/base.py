"""
Core data structures for the crowding scraper.

Defines the cache partition key, the normalized record returned to callers
and the process-lifetime scrape statistics.
"""

from typing import List, Dict, Optional, Set
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for colorized logging."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @staticmethod
    def green(text):
        return f"{Colors.GREEN}{text}{Colors.RESET}"

    @staticmethod
    def yellow(text):
        return f"{Colors.YELLOW}{text}{Colors.RESET}"

    @staticmethod
    def red(text):
        return f"{Colors.RED}{text}{Colors.RESET}"

    @staticmethod
    def cyan(text):
        return f"{Colors.CYAN}{text}{Colors.RESET}"

    @staticmethod
    def gray(text):
        return f"{Colors.GRAY}{text}{Colors.RESET}"

    @staticmethod
    def bold(text):
        return f"{Colors.BOLD}{text}{Colors.RESET}"


class CrowdingLevel(Enum):
    """Coarse passenger-load estimate shown on the schedule page."""
    LOW = "low"
    SOME = "some"
    MODERATE = "moderate"
    HIGH = "high"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'CrowdingLevel':
        try:
            return cls((value or '').strip().lower())
        except ValueError:
            return cls.LOW


@dataclass(frozen=True)
class ScrapeKey:
    """Route partition used for caching and request coalescing."""
    origin: str
    destination: str
    line: str

    def __post_init__(self):
        object.__setattr__(self, 'origin', self.origin.strip().upper())
        object.__setattr__(self, 'destination', self.destination.strip().upper())
        object.__setattr__(self, 'line', self.line.strip().upper())

    @property
    def route(self) -> str:
        return f"{self.origin}->{self.destination}"

    def __str__(self) -> str:
        return f"{self.origin}->{self.destination} ({self.line})"


@dataclass
class CrowdingRecord:
    """One train's crowding and delay estimate for a route."""
    trip_id: str
    crowding: CrowdingLevel = CrowdingLevel.LOW
    scheduled_departure: Optional[str] = None
    predicted_departure: Optional[str] = None
    scheduled_arrival: Optional[str] = None
    predicted_arrival: Optional[str] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'trip_id': self.trip_id,
            'crowding': self.crowding.value,
            'scheduled_departure': self.scheduled_departure,
            'predicted_departure': self.predicted_departure,
            'scheduled_arrival': self.scheduled_arrival,
            'predicted_arrival': self.predicted_arrival,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ScrapeStats:
    """Cumulative scrape diagnostics for the lifetime of the process."""
    total_attempts: int = 0
    success_count: int = 0
    fail_count: int = 0
    last_fail_reason: str = ''
    failed_routes: Set[str] = field(default_factory=set)
    successful_routes: Set[str] = field(default_factory=set)

    @property
    def success_rate(self) -> int:
        if self.total_attempts == 0:
            return 0
        return round(self.success_count / self.total_attempts * 100)

    def record_success(self, key: ScrapeKey):
        self.total_attempts += 1
        self.success_count += 1
        self.successful_routes.add(key.route)

    def record_failure(self, key: ScrapeKey, reason: str):
        self.total_attempts += 1
        self.fail_count += 1
        self.last_fail_reason = reason
        self.failed_routes.add(key.route)

    def summary(self) -> str:
        return f"Success Rate: {self.success_rate}% ({self.success_count}/{self.total_attempts})"

    def to_dict(self) -> Dict:
        return {
            'total_attempts': self.total_attempts,
            'success_count': self.success_count,
            'fail_count': self.fail_count,
            'success_rate': f"{self.success_rate}%",
            'last_fail_reason': self.last_fail_reason or 'none',
            'failed_routes': sorted(self.failed_routes),
            'successful_routes': sorted(self.successful_routes),
        }


def records_to_dicts(records: List[CrowdingRecord]) -> List[Dict]:
    return [record.to_dict() for record in records]
