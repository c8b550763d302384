"""
Data normalization utilities for scrapers.

These functions standardize scraped data into consistent formats.
"""

import re
from typing import Optional


def normalize_time_text(text: Optional[str]) -> Optional[str]:
    """
    Collapse whitespace in a displayed time.

    Examples:
        '  8:33\\n PM ' -> '8:33 PM'
        '' -> None
    """
    if not text:
        return None
    text = re.sub(r'\s+', ' ', text).strip()
    return text or None


def normalize_stop_code(code: Optional[str]) -> str:
    """
    Normalize a stop code to the upstream's upper-case form.

    Examples:
        palatine -> PALATINE
        ' otc ' -> OTC
    """
    return (code or '').strip().upper()
