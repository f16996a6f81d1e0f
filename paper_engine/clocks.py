"""
Paper Engine – Session Clock

Defines the UTC trading-session windows and their quality score, which the
decision layer consumes as "session quality" (0-1).

Notes:
- Weekends (Saturday/Sunday UTC) are a single low-quality session.
- Boundaries are half-open: a window owns its start minute, not its end.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timezone


@dataclass(frozen=True)
class TradingSession:
    name: str
    quality: float
    is_weekend: bool = False


# (start, end, name, quality) in UTC, ordered by start.
SESSION_WINDOWS: tuple[tuple[time, time, str, float], ...] = (
    (time(0, 0), time(3, 0), "Early Asia", 0.5),
    (time(3, 0), time(7, 0), "Late Asia", 0.55),
    (time(7, 0), time(8, 30), "London Open", 0.8),
    (time(8, 30), time(13, 0), "London Session", 0.9),
    (time(13, 0), time(16, 0), "London/NY Overlap", 1.0),
    (time(16, 0), time(20, 0), "NY Session", 0.85),
    (time(20, 0), time(22, 0), "Late NY", 0.6),
)

WEEKEND = TradingSession(name="Weekend", quality=0.1, is_weekend=True)
OFF_HOURS = TradingSession(name="Off Hours", quality=0.3)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def session_at(now: datetime) -> TradingSession:
    """
    Resolve the trading session for a timestamp.

    Naive datetimes are treated as UTC.
    """
    if now.tzinfo is None:
        now_utc = now.replace(tzinfo=timezone.utc)
    else:
        now_utc = now.astimezone(timezone.utc)

    if now_utc.weekday() >= 5:
        return WEEKEND

    t = now_utc.time()
    for start, end, name, quality in SESSION_WINDOWS:
        if start <= t < end:
            return TradingSession(name=name, quality=quality)
    return OFF_HOURS


def session_quality(now: datetime) -> float:
    return session_at(now).quality


def trading_day(now: datetime) -> str:
    """UTC calendar date used as the daily-stats / halt boundary."""
    if now.tzinfo is None:
        return now.date().isoformat()
    return now.astimezone(timezone.utc).date().isoformat()
