"""
Paper Engine – Position Risk Evaluator

Decides, per open position, whether it must close this tick.

Triggers in priority order (first match closes):
1. stop        P&L <= -stop%            (or stored stop price crossed)
2. target      P&L >= stop% * multiplier (or stored target price crossed)
3. cut loser   P&L <= mode cut threshold
4. trailing    peak P&L reached activation and P&L fell below peak - distance
5. age limit   held longer than the mode's max hold minutes
6. regime flip regime confidently against the position while it is losing,
               unless the thermostat is in danger

This module is PURE:
- No I/O
- Callers persist the resulting closes
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional

from paper_engine.config_types import (
    Bias,
    CloseReason,
    Position,
    PriceSnapshot,
    RegimeSnapshot,
    Side,
    ThermostatTag,
)
from paper_engine.mode_profiles import ModeProfile

REGIME_FLIP_MIN_CONFIDENCE = 0.6


@dataclass(frozen=True)
class ExitDecision:
    position: Position
    reason: CloseReason
    exit_price: float
    pnl_percent: float
    pnl_amount: float


def _stop_crossed(position: Position, price: float) -> bool:
    if position.stop is None:
        return False
    if position.side == Side.LONG:
        return price <= position.stop
    return price >= position.stop


def _target_crossed(position: Position, price: float) -> bool:
    if position.target is None:
        return False
    if position.side == Side.LONG:
        return price >= position.target
    return price <= position.target


def _regime_against(position: Position, regime: Optional[RegimeSnapshot]) -> bool:
    if regime is None or regime.confidence <= REGIME_FLIP_MIN_CONFIDENCE:
        return False
    if position.side == Side.LONG:
        return regime.bias == Bias.BEARISH
    return regime.bias == Bias.BULLISH


def exit_reason(
    position: Position,
    pnl_pct: float,
    price: float,
    profile: ModeProfile,
    *,
    now: datetime,
    regime: Optional[RegimeSnapshot] = None,
    thermostat_tag: ThermostatTag = ThermostatTag.NORMAL,
) -> Optional[CloseReason]:
    if pnl_pct <= -profile.stop_percent or _stop_crossed(position, price):
        return CloseReason.STOP_HIT

    if pnl_pct >= profile.target_percent or _target_crossed(position, price):
        return CloseReason.TARGET_HIT

    if profile.cut_loser_threshold is not None and pnl_pct <= profile.cut_loser_threshold:
        return CloseReason.CUT_LOSER

    peak = max(position.peak_pnl_percent, pnl_pct)
    if peak >= profile.trailing_activation and pnl_pct < peak - profile.trailing_distance:
        return CloseReason.TRAILING_STOP

    if position.age_minutes(now) > profile.max_hold_minutes:
        return CloseReason.AGE_LIMIT

    if (
        pnl_pct < 0
        and thermostat_tag != ThermostatTag.DANGER
        and _regime_against(position, regime)
    ):
        return CloseReason.REGIME_FLIP

    return None


def evaluate_position(
    position: Position,
    snapshot: Optional[PriceSnapshot],
    profile: ModeProfile,
    *,
    now: datetime,
    regime: Optional[RegimeSnapshot] = None,
    thermostat_tag: ThermostatTag = ThermostatTag.NORMAL,
) -> Optional[ExitDecision]:
    if snapshot is None or not snapshot.is_valid():
        return None

    price = position.mark_price(snapshot)
    pnl_pct = position.pnl_percent(price)
    reason = exit_reason(
        position,
        pnl_pct,
        price,
        profile,
        now=now,
        regime=regime,
        thermostat_tag=thermostat_tag,
    )
    if reason is None:
        return None
    return ExitDecision(
        position=position,
        reason=reason,
        exit_price=price,
        pnl_percent=pnl_pct,
        pnl_amount=position.pnl_amount(price),
    )


def evaluate_positions(
    positions: Iterable[Position],
    snapshots: Mapping[str, PriceSnapshot],
    profile_for: Callable[[str], ModeProfile],
    *,
    now: datetime,
    regimes: Optional[Mapping[str, RegimeSnapshot]] = None,
    thermostat_tag: ThermostatTag = ThermostatTag.NORMAL,
) -> list[ExitDecision]:
    """
    Evaluate every position once; positions without a price are skipped.
    """
    regimes = regimes or {}
    seen: set[str] = set()
    decisions: list[ExitDecision] = []
    for position in positions:
        if position.id in seen:
            continue
        seen.add(position.id)
        decision = evaluate_position(
            position,
            snapshots.get(position.symbol),
            profile_for(position.strategy),
            now=now,
            regime=regimes.get(position.symbol),
            thermostat_tag=thermostat_tag,
        )
        if decision is not None:
            decisions.append(decision)
    return decisions
