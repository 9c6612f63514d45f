"""New York trading-day helpers."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pandas as pd

from eod_portfolio.config import DEFAULT_TIMEZONE

NY_TZ = ZoneInfo(DEFAULT_TIMEZONE)

# NYSE full-day closures.
US_MARKET_HOLIDAYS: frozenset[date] = frozenset(
    date.fromisoformat(day)
    for day in (
        "2024-01-01", "2024-01-15", "2024-02-19", "2024-03-29", "2024-05-27",
        "2024-06-19", "2024-07-04", "2024-09-02", "2024-11-28", "2024-12-25",
        "2025-01-01", "2025-01-09", "2025-01-20", "2025-02-17", "2025-04-18",
        "2025-05-26", "2025-06-19", "2025-07-04", "2025-09-01", "2025-11-27",
        "2025-12-25",
        "2026-01-01", "2026-01-19", "2026-02-16", "2026-04-03", "2026-05-25",
        "2026-06-19", "2026-07-03", "2026-09-07", "2026-11-26", "2026-12-25",
    )
)


def ny_now() -> datetime:
    return datetime.now(tz=NY_TZ)


def ny_today() -> date:
    return ny_now().date()


def trading_day_ny(timestamp: datetime) -> date:
    """Return the New York calendar day a UTC timestamp falls on."""

    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(NY_TZ).date()


def is_trading_day(day: date) -> bool:
    return day.weekday() < 5 and day not in US_MARKET_HOLIDAYS


def trading_days(start: date, end: date) -> list[date]:
    """Trading days in ``[start, end]`` inclusive, oldest first."""

    if end < start:
        return []
    index = pd.bdate_range(start=start, end=end, freq="C", holidays=sorted(US_MARKET_HOLIDAYS))
    return [stamp.date() for stamp in index]


def previous_trading_day(day: date) -> date:
    candidate = day - timedelta(days=1)
    while not is_trading_day(candidate):
        candidate -= timedelta(days=1)
    return candidate


__all__ = [
    "NY_TZ",
    "US_MARKET_HOLIDAYS",
    "ny_now",
    "ny_today",
    "trading_day_ny",
    "is_trading_day",
    "trading_days",
    "previous_trading_day",
]
