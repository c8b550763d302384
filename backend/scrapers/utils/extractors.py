"""
Schedule page extraction.

The upstream page is unversioned, so everything that knows its markup lives
here behind `ScheduleExtractor`. Scheduling, caching and circuit breaking
never look at HTML.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

from bs4 import BeautifulSoup, Tag

from ..base import CrowdingLevel, ScrapeKey
from ..config import METRA, SiteConfig, TRIP_ID_PATTERN
from .normalizers import normalize_time_text

logger = logging.getLogger(__name__)

# Checked in order; the first marker present wins
CROWDING_PRECEDENCE = [
    (CrowdingLevel.HIGH, 'trip--crowding-high'),
    (CrowdingLevel.MODERATE, 'trip--crowding-moderate'),
    (CrowdingLevel.SOME, 'trip--crowding-some'),
]


@dataclass
class ExtractedRow:
    """A trip row as read from the page, before it is cached."""
    trip_id: str
    crowding: CrowdingLevel = CrowdingLevel.LOW
    scheduled_departure: Optional[str] = None
    predicted_departure: Optional[str] = None
    scheduled_arrival: Optional[str] = None
    predicted_arrival: Optional[str] = None


class ScheduleExtractor(ABC):
    """Turns a rendered schedule page into trip rows for one route."""

    @abstractmethod
    def extract(self, html: str, key: ScrapeKey) -> List[ExtractedRow]:
        pass


class MetraScheduleExtractor(ScheduleExtractor):
    """
    Extractor for the metra.com schedule table.

    - `.trip-row[id]` elements carry the crowding indicator
    - `td.stop[id]` cells carry a struck-through scheduled time followed by
      the predicted time when a train is running late
    """

    def __init__(self, site: SiteConfig = METRA):
        self.selectors = site.selectors

    def extract(self, html: str, key: ScrapeKey) -> List[ExtractedRow]:
        soup = BeautifulSoup(html, 'html.parser')
        rows: Dict[str, ExtractedRow] = {}

        for trip_row in soup.select(self.selectors['trip_row']):
            trip_id = trip_row.get('id')
            if not trip_id:
                continue
            rows[trip_id] = ExtractedRow(trip_id=trip_id, crowding=self.crowding_level(trip_row))

        for cell in soup.select(self.selectors['stop_cell']):
            self._apply_stop_times(cell, key, rows)

        return list(rows.values())

    def crowding_level(self, trip_row: Tag) -> CrowdingLevel:
        container = trip_row.select_one(self.selectors['crowding'])
        if container is None:
            return CrowdingLevel.LOW

        classes = container.get('class') or []
        for level, marker in CROWDING_PRECEDENCE:
            if marker in classes or container.select_one(f'.{marker}') is not None:
                return level
        return CrowdingLevel.LOW

    def _apply_stop_times(self, cell: Tag, key: ScrapeKey, rows: Dict[str, ExtractedRow]):
        stop_text = cell.select_one(self.selectors['stop_text'])
        if stop_text is None:
            return
        strike_out = stop_text.select_one(self.selectors['strike_out'])
        if strike_out is None:
            return  # On time, no delay info

        cell_id = cell.get('id')
        if not cell_id:
            return
        match = TRIP_ID_PATTERN.match(cell_id)
        if not match:
            return
        row = rows.get(match.group(1))
        if row is None:
            return

        scheduled, predicted = self.time_pair(stop_text, strike_out)

        cell_id_upper = cell_id.upper()
        if key.origin in cell_id_upper:
            row.scheduled_departure = scheduled
            row.predicted_departure = predicted
        elif key.destination in cell_id_upper:
            row.scheduled_arrival = scheduled
            row.predicted_arrival = predicted

    @staticmethod
    def time_pair(stop_text: Tag, strike_out: Tag):
        """
        Pair the struck-through scheduled time with the predicted time shown
        next to it.

        Returns:
            (scheduled, predicted) tuple; either may be None
        """
        scheduled = normalize_time_text(strike_out.get_text())

        predicted = None
        parts = [normalize_time_text(part) for part in stop_text.stripped_strings]
        parts = [part for part in parts if part]
        if len(parts) > 1 and scheduled:
            predicted = next((part for part in parts if part != scheduled), None)

        # Fallback when both times share a single text node
        if not predicted:
            full_text = stop_text.get_text(' ')
            if scheduled:
                full_text = full_text.replace(scheduled, '', 1)
            predicted = normalize_time_text(full_text)

        return scheduled, predicted
