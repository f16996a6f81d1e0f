"""
Paper Engine – Candidate Scorer & Ranker

Scores every tradable symbol against the active mode profile and its regime.

Score composition:
- base 40
- regime suitability * 0.3
- volatility fit * 15
- trend strength contribution * 20 (modes that prefer trending structure)
- regime confidence * 10
- +5 when session quality meets the mode minimum
- total scaled by (0.7 + aggression * 0.3)
- -10 per existing position in the symbol; rejected at the per-symbol cap

Direction follows the regime bias when it is directional and confident;
otherwise it comes from the injected random source.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional

from paper_engine.config_types import (
    Bias,
    CloseReason,
    PriceSnapshot,
    RegimeSnapshot,
    Side,
    Structure,
    Trade,
)
from paper_engine.mode_profiles import ModeProfile

BASE_SCORE = 40.0
REGIME_WEIGHT = 0.3
VOLATILITY_FIT_WEIGHT = 15.0
TREND_STRENGTH_WEIGHT = 20.0
CONFIDENCE_WEIGHT = 10.0
SESSION_BONUS = 5.0
STACKING_PENALTY = 10.0
DIRECTION_MIN_CONFIDENCE = 0.35

_STOP_REASONS = frozenset({CloseReason.STOP_HIT, CloseReason.CUT_LOSER})
_TARGET_REASONS = frozenset({CloseReason.TARGET_HIT, CloseReason.TRAILING_STOP})


@dataclass(frozen=True)
class Candidate:
    symbol: str
    side: Side
    score: float
    confidence: float
    regime: RegimeSnapshot
    snapshot: PriceSnapshot
    reason: str


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def regime_suitability(profile: ModeProfile, regime: RegimeSnapshot) -> float:
    score = 0.0
    if regime.structure in profile.preferred_structures:
        score += 25.0
    elif profile.any_regime:
        score += 10.0
    else:
        score -= 15.0

    if regime.volatility in profile.preferred_volatility:
        score += 20.0
    else:
        score += 5.0

    if regime.bias != Bias.NEUTRAL:
        score += 10.0
    return score


def volatility_fit(profile: ModeProfile, regime: RegimeSnapshot) -> float:
    return 1.0 if regime.volatility in profile.preferred_volatility else 0.3


def choose_side(regime: RegimeSnapshot, rng: random.Random) -> tuple[Side, bool]:
    """
    Returns (side, forced). forced is True when the regime gave no usable
    direction and the random fallback picked one.
    """
    if regime.confidence > DIRECTION_MIN_CONFIDENCE:
        if regime.bias == Bias.BULLISH:
            return Side.LONG, False
        if regime.bias == Bias.BEARISH:
            return Side.SHORT, False
    return (Side.LONG if rng.random() < 0.5 else Side.SHORT), True


def in_cooldown(
    symbol: str,
    profile: ModeProfile,
    recent_trades: Iterable[Trade],
    now: datetime,
) -> bool:
    """True if the latest close on symbol for this mode is inside its cooldown."""
    last: Optional[Trade] = None
    for trade in recent_trades:
        if trade.symbol != symbol or trade.strategy != profile.key:
            continue
        if last is None or trade.closed_at > last.closed_at:
            last = trade
    if last is None:
        return False

    if last.reason in _STOP_REASONS:
        minutes = profile.cooldown_after_stop_minutes
    elif last.reason in _TARGET_REASONS:
        minutes = profile.cooldown_after_target_minutes
    else:
        return False
    return minutes > 0 and now - last.closed_at < timedelta(minutes=minutes)


def score_symbol(
    snapshot: PriceSnapshot,
    regime: RegimeSnapshot,
    profile: ModeProfile,
    *,
    aggression: float,
    session_quality: float,
    open_in_symbol: int,
    rng: random.Random,
) -> Optional[Candidate]:
    if not snapshot.is_valid():
        return None
    if open_in_symbol >= profile.max_per_symbol:
        return None

    score = BASE_SCORE
    score += regime_suitability(profile, regime) * REGIME_WEIGHT
    score += volatility_fit(profile, regime) * VOLATILITY_FIT_WEIGHT
    if profile.prefers(Structure.TRENDING):
        score += regime.trend_strength / 100.0 * TREND_STRENGTH_WEIGHT
    score += regime.confidence * CONFIDENCE_WEIGHT
    if session_quality >= profile.session_quality_min:
        score += SESSION_BONUS

    score *= 0.7 + aggression * 0.3
    score -= STACKING_PENALTY * open_in_symbol

    side, forced = choose_side(regime, rng)
    confidence = _clamp(0.5 + (score - 50.0) / 100.0, 0.3, 0.95)

    reason = f"{profile.key} {side.value} {regime.structure.value}/{regime.volatility.value}"
    if forced:
        reason += " (fallback direction)"

    return Candidate(
        symbol=snapshot.symbol,
        side=side,
        score=round(score, 4),
        confidence=round(confidence, 4),
        regime=regime,
        snapshot=snapshot,
        reason=reason,
    )


def rank_candidates(
    snapshots: Mapping[str, PriceSnapshot],
    regimes: Mapping[str, RegimeSnapshot],
    profile: ModeProfile,
    *,
    aggression: float,
    session_quality: float,
    open_by_symbol: Mapping[str, int],
    rng: random.Random,
    now: datetime,
    recent_trades: Iterable[Trade] = (),
    symbols: Optional[Iterable[str]] = None,
) -> list[Candidate]:
    """
    Score the universe (symbols, or every snapshot) and rank descending.

    Equal scores keep universe order. Symbols are visited in order so a seeded
    rng yields reproducible fallback directions.
    """
    trades = list(recent_trades)
    universe = list(symbols) if symbols is not None else list(snapshots)
    out: list[Candidate] = []
    for symbol in universe:
        snapshot = snapshots.get(symbol)
        regime = regimes.get(symbol)
        if snapshot is None or regime is None:
            continue
        if in_cooldown(symbol, profile, trades, now):
            continue
        candidate = score_symbol(
            snapshot,
            regime,
            profile,
            aggression=aggression,
            session_quality=session_quality,
            open_in_symbol=int(open_by_symbol.get(symbol, 0)),
            rng=rng,
        )
        if candidate is not None:
            out.append(candidate)
    out.sort(key=lambda c: -c.score)
    return out
