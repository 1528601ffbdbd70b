"""
Utility helpers for timestamps, timezone display and money.
"""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

import pytz

UTC = pytz.UTC
CENT = Decimal("0.01")


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string, the format stored on records"""
    return utc_now().isoformat()


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp; naive values are taken as UTC"""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return UTC.localize(dt)
    return dt.astimezone(UTC)


def format_class_date(start_date: Optional[str], start_time: Optional[str], tz_name: str) -> str:
    """Render a class's local date/time with its timezone abbreviation"""
    if not start_date:
        return "Date to be announced"
    tz = pytz.timezone(tz_name)
    try:
        if start_time:
            naive = datetime.strptime(f"{start_date} {start_time}", "%Y-%m-%d %H:%M")
            return tz.localize(naive).strftime("%d %b %Y, %I:%M %p %Z")
        naive = datetime.strptime(start_date, "%Y-%m-%d")
        return tz.localize(naive).strftime("%d %b %Y")
    except ValueError:
        # Free-form dates entered by hosts are shown verbatim.
        return " ".join(p for p in (start_date, start_time) if p)


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value) -> int:
    return int(to_money(value) * 100)


def price_breakdown(price_per_person: float, student_count: int, fee_rate: float) -> Tuple[float, float, float]:
    """(subtotal, herd fee, total); the fee is rounded half-up to the cent"""
    subtotal = to_money(price_per_person) * student_count
    fee = to_money(subtotal * Decimal(str(fee_rate)))
    total = subtotal + fee
    return float(subtotal), float(fee), float(total)


def amounts_match(expected: float, supplied: Optional[float]) -> bool:
    if supplied is None:
        return True
    return abs(to_money(expected) - to_money(supplied)) <= CENT
