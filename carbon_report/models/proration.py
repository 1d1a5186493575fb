r"""Billing-period proration for yearly reporting.

Provider spreadsheets describe consumption over supply periods that rarely
line up with the calendar year being reported. The share of a period's
quantity that belongs to the target year is its inclusive day overlap:

    Applicable = Q \times \frac{days([start, end] \cap [Jan 1, Dec 31])}{days([start, end])}

Dates come from hand-maintained sheets, so parsing is deliberately lenient
and returns ``None`` rather than raising. A ``None`` date means "unknown":
the whole quantity is then attributed to the target year.
"""

import re
from datetime import date
from typing import Optional

_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[ T].*)?$")
_NUMERIC_DATE = re.compile(r"^(\d{1,2})([/-])(\d{1,2})\2(\d{4}|\d{2})$")
_COMPACT_DATE = re.compile(r"^\d{8}$")
_LOOSE_DATE = re.compile(r"^(\d{1,2})\s*[/\-.]\s*(\d{1,2})\s*[/\-.]\s*(\d{4}|\d{2})$")
_WHITESPACE = re.compile(r"\s+")


def _expand_year(text: str) -> int:
    value = int(text)
    if len(text) <= 2:
        return 1900 + value if value >= 50 else 2000 + value
    return value


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _day_or_month_first(first: str, second: str, year_text: str) -> Optional[date]:
    a, b = int(first), int(second)
    year = _expand_year(year_text)
    return _safe_date(year, b, a) or _safe_date(year, a, b)


def parse_date(text: Optional[str]) -> Optional[date]:
    """Parse a loosely formatted date string.

    Tries, in order: ISO ``yyyy-mm-dd`` (a trailing time part is ignored),
    ``d/m/y`` then ``m/d/y`` with ``/`` or ``-`` and 4- or 2-digit years,
    compact ``yyyymmdd``, and finally a regex split that tolerates spaces,
    dots and mixed separators, again day-first before month-first.
    Two-digit years from 50 on are 19xx, the rest 20xx.

    Args:
        text: Raw cell text.

    Returns:
        The parsed date, or None if no interpretation yields a valid date.

    Example:
        >>> parse_date("03/02/2023")
        datetime.date(2023, 2, 3)
    """
    if text is None:
        return None
    cleaned = _WHITESPACE.sub(" ", str(text).replace("\u00a0", " ")).strip()
    if not cleaned:
        return None

    match = _ISO_DATE.match(cleaned)
    if match:
        parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed is not None:
            return parsed

    match = _NUMERIC_DATE.match(cleaned)
    if match:
        parsed = _day_or_month_first(match.group(1), match.group(3), match.group(4))
        if parsed is not None:
            return parsed

    if _COMPACT_DATE.match(cleaned):
        parsed = _safe_date(int(cleaned[:4]), int(cleaned[4:6]), int(cleaned[6:]))
        if parsed is not None:
            return parsed

    match = _LOOSE_DATE.match(cleaned)
    if match:
        return _day_or_month_first(match.group(1), match.group(2), match.group(3))
    return None


def parse_quantity(text: Optional[str]) -> Optional[float]:
    """Parse a locale-formatted number ("1.234,56", "1,234.56", "12,5").

    When both separators appear, the right-most one is the decimal mark. A
    single comma is a decimal mark; repeated commas group thousands
    ("1,234,567").

    Returns:
        The number, or None when the text is empty or not numeric.
    """
    if text is None:
        return None
    cleaned = str(text).replace("\u00a0", "").replace(" ", "").strip()
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(",") > 1:
        cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    try:
        return float(cleaned)
    except ValueError:
        return None


def overlap_days(start: date, end: date, year: int) -> int:
    """Inclusive number of days of ``[start, end]`` inside ``year``."""
    overlap_start = max(start, date(year, 1, 1))
    overlap_end = min(end, date(year, 12, 31))
    if overlap_end < overlap_start:
        return 0
    return (overlap_end - overlap_start).days + 1


def applicable_fraction(start: Optional[date], end: Optional[date], year: int) -> float:
    """Fraction of the period ``[start, end]`` that falls inside ``year``.

    Unknown dates give 1.0 (whole period applies); an inverted period gives 0.
    """
    if start is None or end is None:
        return 1.0
    if end < start:
        return 0.0
    total_days = (end - start).days + 1
    return overlap_days(start, end, year) / total_days


def applicable_quantity(start_text: Optional[str], end_text: Optional[str],
                        total_quantity: float, target_year: int) -> float:
    """Quantity of a billing period attributable to ``target_year``.

    Args:
        start_text: Period start as raw cell text.
        end_text: Period end as raw cell text.
        total_quantity: Quantity billed for the whole period.
        target_year: Reporting year.

    Returns:
        The prorated quantity; 0.0 for non-positive quantities, inverted
        periods and periods with no overlap. If either date cannot be parsed
        the whole quantity is returned.

    Example:
        >>> applicable_quantity("2023-12-26", "2024-01-04", 100, 2023)
        60.0
    """
    if total_quantity is None or total_quantity <= 0:
        return 0.0
    start = parse_date(start_text)
    end = parse_date(end_text)
    return total_quantity * applicable_fraction(start, end, target_year)
