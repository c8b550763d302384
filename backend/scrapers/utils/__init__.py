"""Shared utilities for scrapers."""

from .normalizers import (
    normalize_time_text,
    normalize_stop_code,
)
from .extractors import (
    ExtractedRow,
    ScheduleExtractor,
    MetraScheduleExtractor,
)

__all__ = [
    'normalize_time_text',
    'normalize_stop_code',
    'ExtractedRow',
    'ScheduleExtractor',
    'MetraScheduleExtractor',
]
