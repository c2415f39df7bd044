"""Date parsing and formatting used for matching and naming extracted objects."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Optional

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%m.%d.%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%b. %d, %Y",
    "%Y%m%d",
)

_ORDINAL_SUFFIX = re.compile(r"(?<=\d)(st|nd|rd|th)\b", flags=re.IGNORECASE)


def parse_date(value: Any) -> Optional[date]:
    """Parse a date from common textual representations.

    Returns None when the value is empty or not recognizable as a date.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    cleaned = _ORDINAL_SUFFIX.sub("", text)
    cleaned = re.sub(r"\s+", " ", cleaned)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(value: Any) -> Optional[str]:
    """Return the ISO-8601 ``YYYY-MM-DD`` form of ``value`` or None."""
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def normalize_date_pattern(pattern: str) -> Optional[str]:
    """Normalize the date inside a LIKE pattern, keeping its ``%`` wildcards.

    ``%10/23/2017%`` -> ``%2017-10-23%``. A wildcard-only pattern is returned as-is;
    an unparseable date returns None.
    """
    inner = pattern.strip("%")
    if not inner:
        return pattern
    iso = normalize_date(inner)
    if iso is None:
        return None
    prefix = "%" if pattern.startswith("%") else ""
    suffix = "%" if pattern.endswith("%") else ""
    return f"{prefix}{iso}{suffix}"


def ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_display_date(value: date) -> str:
    """``2017-10-31`` -> ``October 31st, 2017``."""
    return f"{value.strftime('%B')} {ordinal(value.day)}, {value.year}"
