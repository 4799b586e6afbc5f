"""
utils.py
Money and date primitives, plus display formatting helpers

All amounts are Decimal quantized to cents. All dates are calendar days in
UTC: anything carrying a timezone is converted to UTC before the day is taken.
"""

from dataclasses import fields, is_dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, List
import pandas as pd


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


# ============================================================
# MONEY
# ============================================================

def to_money(x) -> Decimal:
    """Convert a number or numeric string to a cent-quantized Decimal"""
    if x is None:
        return ZERO
    if isinstance(x, Decimal):
        d = x
    else:
        try:
            # str() keeps floats like 0.1 from dragging binary noise along
            d = Decimal(str(x).strip())
        except InvalidOperation:
            raise ValueError(f"Not a monetary amount: {x!r}")
    if not d.is_finite():
        raise ValueError(f"Not a monetary amount: {x!r}")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values) -> Decimal:
    """Sum monetary values exactly"""
    total = ZERO
    for v in values:
        total += to_money(v)
    return total


def split_amount(total, parts: int) -> List[Decimal]:
    """
    Split an amount into equal cent-exact parts

    Every part but the last is rounded down to the cent; the last part
    absorbs the remainder so the parts always sum to the total.
    """
    total = to_money(total)
    if parts < 1:
        raise ValueError("parts must be at least 1")
    base = (total / parts).quantize(CENT, rounding=ROUND_DOWN)
    return [base] * (parts - 1) + [total - base * (parts - 1)]


def percent_of(total, pct: float) -> Decimal:
    """pct percent of total, rounded to the cent"""
    return to_money(to_money(total) * Decimal(str(pct)) / Decimal(100))


# ============================================================
# DATES
# ============================================================

def as_date(x) -> date:
    """
    Convert various formats to a UTC calendar day

    Plain dates pass through. Timezone-aware datetimes and timestamps are
    converted to UTC first; naive values are taken as already UTC.
    """
    if x is None:
        raise ValueError("date is required")
    if isinstance(x, date) and not isinstance(x, datetime):
        return x
    ts = pd.Timestamp(x)
    if pd.isna(ts):
        raise ValueError(f"Not a date: {x!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC")
    return ts.date()


def utc_today() -> date:
    """Today's calendar day in UTC"""
    return datetime.now(timezone.utc).date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_months(d: date, months: int) -> date:
    """Add months to a date (month-end clamped, e.g. Jan 31 + 1 -> Feb 28)"""
    return (pd.Timestamp(d) + pd.DateOffset(months=months)).date()


def year_fraction(d0: date, d1: date) -> float:
    """ACT/365 year fraction between two dates"""
    return (d1 - d0).days / 365.0


# ============================================================
# FORMATTING
# ============================================================

def fmt_date(x) -> str:
    """Format date for display"""
    try:
        if x is None or (isinstance(x, float) and pd.isna(x)):
            return "—"
        return as_date(x).isoformat()
    except (ValueError, TypeError):
        return "—"


def fmt_money(x) -> str:
    """Format amount with commas and cents"""
    try:
        if x is None:
            return "—"
        return f"${to_money(x):,.2f}"
    except ValueError:
        return "—"


def fmt_pct(x, places: int = 2) -> str:
    """Format a fraction (0.25) as a percentage (25.00%)"""
    if x is None or (isinstance(x, float) and pd.isna(x)):
        return "—"
    return f"{float(x) * 100:.{places}f}%"


# ============================================================
# PLAIN DATA
# ============================================================

def plain_value(value: Any) -> Any:
    """
    Convert engine values to plain JSON-friendly data

    Dataclasses become dicts, enums their wire value, Decimals strings
    (exact), dates ISO strings.
    """
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: plain_value(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: plain_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain_value(v) for v in value]
    return value
