"""
Paper Engine – Candidate Filtering & Order Generation

Principles:
- Fixed-fractional risk: size = equity * risk% * size multiplier / stop distance
- Stop distance scales with mid price, the mode's stop percent and the
  condition adjustment; target distance = stop distance * multiplier * tp adjust
- Slots are bounded per tick, per book and per symbol

NO execution happens here.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, Mapping, Optional

from paper_engine.config_types import ProposedOrder, Side, ThermostatState, ThermostatTag
from paper_engine.mode_profiles import ModeProfile, ProfileAdjustment, adjust_for_conditions
from paper_engine.scoring import Candidate

MIN_ORDER_SIZE = 0.001
AGGRESSIVE_THRESHOLD_RELIEF = 5.0
DANGER_THRESHOLD_PENALTY = 15.0


def effective_quality_threshold(profile: ModeProfile, thermostat: ThermostatState) -> float:
    threshold = profile.entry_score_threshold
    if thermostat.aggression > 0.7:
        threshold -= AGGRESSIVE_THRESHOLD_RELIEF
    if thermostat.tag == ThermostatTag.DANGER:
        threshold += DANGER_THRESHOLD_PENALTY
    return threshold


def filter_candidates(
    candidates: Iterable[Candidate],
    profile: ModeProfile,
    thermostat: ThermostatState,
) -> list[Candidate]:
    threshold = effective_quality_threshold(profile, thermostat)
    return [
        c
        for c in candidates
        if c.score >= threshold and c.confidence >= profile.edge_confidence_min
    ]


def available_slots(max_total: int, open_count: int, closing_count: int = 0) -> int:
    return max(0, max_total - max(0, open_count - closing_count))


def stop_distance(mid: float, stop_percent: float, sl_adjust: float = 1.0) -> float:
    if mid <= 0:
        raise ValueError("mid must be positive")
    if stop_percent <= 0:
        raise ValueError("stop_percent must be positive")
    return mid * stop_percent / 100.0 * sl_adjust


def compute_order_size(
    equity: float,
    risk_percent: float,
    size_multiplier: float,
    stop_dist: float,
) -> float:
    """
    Units such that a stop-out loses equity * risk% * multiplier / 100.

    Never returns less than MIN_ORDER_SIZE.
    """
    if equity <= 0:
        raise ValueError("equity must be positive")
    if stop_dist <= 0:
        raise ValueError("stop distance must be positive")
    if risk_percent < 0 or size_multiplier < 0:
        raise ValueError("risk_percent and size_multiplier must be non-negative")

    risk_amount = equity * (risk_percent * size_multiplier) / 100.0
    return max(MIN_ORDER_SIZE, risk_amount / stop_dist)


def new_batch_id(now: datetime, prefix: str = "burst") -> str:
    return f"{prefix}_{int(now.timestamp())}_{uuid.uuid4().hex[:8]}"


def build_order(
    candidate: Candidate,
    profile: ModeProfile,
    adjustment: ProfileAdjustment,
    *,
    equity: float,
    batch_id: Optional[str] = None,
) -> ProposedOrder:
    snap = candidate.snapshot
    entry = snap.ask if candidate.side == Side.LONG else snap.bid

    stop_dist = stop_distance(snap.mid, profile.stop_percent, adjustment.sl_adjust)
    target_dist = stop_dist * profile.target_multiplier * adjustment.tp_adjust
    size = compute_order_size(equity, profile.base_risk_percent, adjustment.size_multiplier, stop_dist)

    if candidate.side == Side.LONG:
        stop, target = entry - stop_dist, entry + target_dist
    else:
        stop, target = entry + stop_dist, entry - target_dist

    return ProposedOrder(
        symbol=candidate.symbol,
        side=candidate.side,
        size=size,
        entry_price=entry,
        stop=stop,
        target=target,
        strategy=profile.key,
        reason=candidate.reason,
        confidence=candidate.confidence,
        quality=candidate.score,
        batch_id=batch_id,
    )


def generate_orders(
    candidates: Iterable[Candidate],
    profile: ModeProfile,
    thermostat: ThermostatState,
    *,
    equity: float,
    session_quality: float,
    open_count: int,
    closing_count: int = 0,
    open_by_symbol: Optional[Mapping[str, int]] = None,
    max_total: Optional[int] = None,
    max_per_symbol: Optional[int] = None,
    batch_id: Optional[str] = None,
) -> list[ProposedOrder]:
    """
    candidates must already be ranked (best first).

    max_total / max_per_symbol tighten the profile's own caps (account risk
    limits, burst cluster size). Orders generated earlier in the same call
    count toward the per-symbol cap.
    """
    total_cap = profile.max_total if max_total is None else min(profile.max_total, max_total)
    symbol_cap = profile.max_per_symbol if max_per_symbol is None else min(profile.max_per_symbol, max_per_symbol)

    slots = available_slots(total_cap, open_count, closing_count)
    limit = min(profile.max_entries_per_tick, slots)
    if limit <= 0 or equity <= 0:
        return []

    per_symbol = dict(open_by_symbol or {})
    orders: list[ProposedOrder] = []
    for candidate in filter_candidates(candidates, profile, thermostat):
        if len(orders) >= limit:
            break
        if per_symbol.get(candidate.symbol, 0) >= symbol_cap:
            continue
        adjustment = adjust_for_conditions(
            profile, candidate.regime, session_quality, thermostat.aggression
        )
        orders.append(build_order(candidate, profile, adjustment, equity=equity, batch_id=batch_id))
        per_symbol[candidate.symbol] = per_symbol.get(candidate.symbol, 0) + 1
    return orders
