"""
Paper Engine – Performance Thermostat

Maps recent trading performance to an aggression / confidence pair and a
discrete tag (calm / normal / hot / danger).

Rules (first match wins):
1. today P&L <= -3% OR streak <= -4              -> danger
2. today P&L <= -1.5% OR streak <= -2            -> calm
3. win-rate > 65% AND streak >= 3 AND P&L > 0.5% -> hot
4. otherwise                                      -> normal

This module is PURE:
- No I/O
- No global state; the caller owns the prior streak between ticks
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from paper_engine.config_types import ThermostatState, ThermostatTag, Trade


@dataclass(frozen=True)
class ThermostatConfig:
    streak_lookback: int = 5
    win_rate_window: int = 20

    danger_pnl_pct: float = -3.0
    danger_streak: int = -4
    calm_pnl_pct: float = -1.5
    calm_streak: int = -2
    hot_win_rate: float = 65.0
    hot_streak: int = 3
    hot_pnl_pct: float = 0.5

    min_aggression: float = 0.15
    max_aggression: float = 1.0
    min_confidence: float = 0.2
    max_confidence: float = 1.0


# tag -> (aggression, confidence)
_TAG_LEVELS: dict[ThermostatTag, tuple[float, float]] = {
    ThermostatTag.DANGER: (0.2, 0.3),
    ThermostatTag.CALM: (0.4, 0.5),
    ThermostatTag.HOT: (0.9, 0.85),
    ThermostatTag.NORMAL: (0.6, 0.65),
}


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _ordered(trades: Iterable[Trade]) -> list[Trade]:
    return sorted(trades, key=lambda t: t.closed_at)


def compute_streak(trades: Iterable[Trade], lookback: int = 5, prior_streak: int = 0) -> int:
    """
    Signed count of consecutive same-sign outcomes at the tail of the trade
    window (wins positive, losses negative), capped by lookback.

    A zero-P&L trade counts as a loss. With no trades the prior streak
    carries over.
    """
    window = _ordered(trades)[-lookback:] if lookback > 0 else []
    if not window:
        return prior_streak

    streak = 0
    for trade in reversed(window):
        if trade.is_win:
            if streak < 0:
                break
            streak += 1
        else:
            if streak > 0:
                break
            streak -= 1
    return streak


def win_rate(trades: Iterable[Trade], window: Optional[int] = None) -> float:
    items = _ordered(trades)
    if window is not None:
        items = items[-window:]
    if not items:
        return 50.0
    wins = sum(1 for t in items if t.is_win)
    return wins / len(items) * 100.0


def classify_tag(
    today_pnl_percent: float,
    streak: int,
    recent_win_rate: float,
    cfg: ThermostatConfig,
) -> ThermostatTag:
    if today_pnl_percent <= cfg.danger_pnl_pct or streak <= cfg.danger_streak:
        return ThermostatTag.DANGER
    if today_pnl_percent <= cfg.calm_pnl_pct or streak <= cfg.calm_streak:
        return ThermostatTag.CALM
    if (
        recent_win_rate > cfg.hot_win_rate
        and streak >= cfg.hot_streak
        and today_pnl_percent > cfg.hot_pnl_pct
    ):
        return ThermostatTag.HOT
    return ThermostatTag.NORMAL


def update_thermostat(
    recent_trades: Iterable[Trade],
    today_pnl_percent: float,
    prior_streak: int = 0,
    cfg: Optional[ThermostatConfig] = None,
) -> ThermostatState:
    cfg = cfg or ThermostatConfig()
    trades = list(recent_trades)

    streak = compute_streak(trades, cfg.streak_lookback, prior_streak)
    rate = win_rate(trades, cfg.win_rate_window)
    tag = classify_tag(today_pnl_percent, streak, rate, cfg)

    aggression, confidence = _TAG_LEVELS[tag]
    return ThermostatState(
        aggression=_clamp(aggression, cfg.min_aggression, cfg.max_aggression),
        confidence=_clamp(confidence, cfg.min_confidence, cfg.max_confidence),
        win_rate=rate,
        pnl_percent=float(today_pnl_percent),
        streak=streak,
        tag=tag,
    )
