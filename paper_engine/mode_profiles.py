"""
Paper Engine – Mode Profile Registry

Static, read-only catalog of trading archetypes plus the two pure functions
that consume it each tick:
- adjust_for_conditions: regime / session / aggression nudges to size and
  stop / target distances
- select_adaptive_sub_mode: the adaptive meta-mode's choice among the
  concrete archetypes

Registry order (burst, scalper, trend, adaptive) is significant: it breaks
ties in adaptive selection.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence

from paper_engine.config_types import RegimeSnapshot, Structure, Trade, VolatilityLevel

logger = logging.getLogger(__name__)


class ModeKey(str, Enum):
    BURST = "burst"
    SCALPER = "scalper"
    TREND = "trend"
    ADAPTIVE = "adaptive"


CONCRETE_MODES: tuple[str, ...] = (ModeKey.BURST.value, ModeKey.SCALPER.value, ModeKey.TREND.value)


@dataclass(frozen=True)
class ModeProfile:
    key: str
    label: str

    # Concurrency
    max_per_symbol: int
    max_total: int
    max_entries_per_tick: int

    # Sizing (risk percent of equity per trade, size-factor bounds)
    base_risk_percent: float
    min_size_factor: float
    max_size_factor: float

    # Entry quality
    entry_score_threshold: float
    edge_confidence_min: float

    # Stop / target (percent of entry; target = stop * multiplier)
    stop_percent: float
    target_multiplier: float

    # Timing
    max_hold_minutes: float
    cooldown_after_stop_minutes: float
    cooldown_after_target_minutes: float

    # Regime preference
    preferred_structures: tuple[Structure, ...]
    preferred_volatility: tuple[VolatilityLevel, ...]
    any_regime: bool

    # Management
    trailing_activation: float     # P&L percent that arms the trail
    trailing_distance: float       # give-back from peak, percent
    cut_loser_threshold: Optional[float]
    session_quality_min: float

    @property
    def target_percent(self) -> float:
        return self.stop_percent * self.target_multiplier

    def prefers(self, structure: Structure) -> bool:
        return structure in self.preferred_structures


@dataclass(frozen=True)
class ProfileAdjustment:
    size_multiplier: float
    tp_adjust: float
    sl_adjust: float


@dataclass(frozen=True)
class AdaptiveChoice:
    mode: str
    scores: Mapping[str, float]
    confidence: float
    reason: str


_MODE_PROFILES: dict[str, ModeProfile] = {
    ModeKey.BURST.value: ModeProfile(
        key="burst",
        label="Burst",
        max_per_symbol=5,
        max_total=15,
        max_entries_per_tick=3,
        base_risk_percent=0.5,
        min_size_factor=0.2,
        max_size_factor=1.0,
        entry_score_threshold=25.0,
        edge_confidence_min=0.3,
        stop_percent=0.4,
        target_multiplier=1.5,
        max_hold_minutes=15.0,
        cooldown_after_stop_minutes=1.0,
        cooldown_after_target_minutes=0.0,
        preferred_structures=(Structure.TRENDING, Structure.RANGING),
        preferred_volatility=(VolatilityLevel.HIGH, VolatilityLevel.NORMAL),
        any_regime=True,
        trailing_activation=0.5,
        trailing_distance=0.25,
        cut_loser_threshold=-0.3,
        session_quality_min=0.3,
    ),
    ModeKey.SCALPER.value: ModeProfile(
        key="scalper",
        label="Scalper",
        max_per_symbol=3,
        max_total=8,
        max_entries_per_tick=2,
        base_risk_percent=0.6,
        min_size_factor=0.3,
        max_size_factor=1.2,
        entry_score_threshold=35.0,
        edge_confidence_min=0.4,
        stop_percent=0.25,
        target_multiplier=1.5,
        max_hold_minutes=10.0,
        cooldown_after_stop_minutes=2.0,
        cooldown_after_target_minutes=0.0,
        preferred_structures=(Structure.RANGING, Structure.TRENDING),
        preferred_volatility=(VolatilityLevel.NORMAL, VolatilityLevel.HIGH),
        any_regime=True,
        trailing_activation=0.4,
        trailing_distance=0.2,
        cut_loser_threshold=-0.2,
        session_quality_min=0.5,
    ),
    ModeKey.TREND.value: ModeProfile(
        key="trend",
        label="Trend",
        max_per_symbol=2,
        max_total=5,
        max_entries_per_tick=1,
        base_risk_percent=1.0,
        min_size_factor=0.5,
        max_size_factor=1.5,
        entry_score_threshold=50.0,
        edge_confidence_min=0.5,
        stop_percent=1.0,
        target_multiplier=2.5,
        max_hold_minutes=120.0,
        cooldown_after_stop_minutes=5.0,
        cooldown_after_target_minutes=2.0,
        preferred_structures=(Structure.TRENDING,),
        preferred_volatility=(VolatilityLevel.NORMAL, VolatilityLevel.HIGH),
        any_regime=False,
        trailing_activation=1.0,
        trailing_distance=0.5,
        cut_loser_threshold=-0.8,
        session_quality_min=0.7,
    ),
    ModeKey.ADAPTIVE.value: ModeProfile(
        key="adaptive",
        label="Adaptive",
        max_per_symbol=3,
        max_total=10,
        max_entries_per_tick=2,
        base_risk_percent=0.7,
        min_size_factor=0.3,
        max_size_factor=1.3,
        entry_score_threshold=35.0,
        edge_confidence_min=0.4,
        stop_percent=0.5,
        target_multiplier=2.0,
        max_hold_minutes=60.0,
        cooldown_after_stop_minutes=2.0,
        cooldown_after_target_minutes=1.0,
        preferred_structures=(Structure.TRENDING, Structure.RANGING),
        preferred_volatility=(VolatilityLevel.HIGH, VolatilityLevel.NORMAL, VolatilityLevel.LOW),
        any_regime=True,
        trailing_activation=0.6,
        trailing_distance=0.3,
        cut_loser_threshold=-0.5,
        session_quality_min=0.4,
    ),
}

MODE_PROFILES: Mapping[str, ModeProfile] = MappingProxyType(_MODE_PROFILES)
DEFAULT_MODE = ModeKey.ADAPTIVE.value

_OVERRIDABLE_FIELDS = frozenset(
    f.name for f in dataclasses.fields(ModeProfile) if f.name not in ("key", "label")
)


def list_mode_keys() -> list[str]:
    return [key.value for key in ModeKey]


def get_mode_profile(key: str) -> ModeProfile:
    try:
        return MODE_PROFILES[ModeKey(str(key).strip().lower()).value]
    except ValueError:
        raise ValueError(f"unknown mode: {key!r}") from None


def apply_overrides(profile: ModeProfile, overrides: Optional[Mapping[str, Any]]) -> ModeProfile:
    """
    Return a copy of profile with per-mode setting overrides applied.

    Unknown keys raise ValueError; preference lists accept enum values as
    plain strings.
    """
    if not overrides:
        return profile
    unknown = sorted(set(overrides) - _OVERRIDABLE_FIELDS)
    if unknown:
        raise ValueError(f"unknown {profile.key} override(s): {', '.join(unknown)}")

    changes: dict[str, Any] = {}
    for name, value in overrides.items():
        if name == "preferred_structures":
            value = tuple(Structure(v) for v in value)
        elif name == "preferred_volatility":
            value = tuple(VolatilityLevel(v) for v in value)
        changes[name] = value
    return dataclasses.replace(profile, **changes)


def resolve_profile(
    key: str,
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> ModeProfile:
    """Profile for a strategy key with overrides; unknown keys fall back to adaptive."""
    try:
        profile = get_mode_profile(key)
    except ValueError:
        logger.warning("unknown strategy key %r; using adaptive profile", key)
        profile = MODE_PROFILES[DEFAULT_MODE]
    return apply_overrides(profile, (overrides or {}).get(profile.key))


# -------------------------
# Condition adjustment
# -------------------------

def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def adjust_for_conditions(
    profile: ModeProfile,
    regime: RegimeSnapshot,
    session_quality: float,
    aggression: float,
) -> ProfileAdjustment:
    size = 1.0
    tp = 1.0
    sl = 1.0

    if regime.structure == Structure.TRENDING and profile.prefers(Structure.TRENDING):
        size += 0.15
    elif regime.structure == Structure.RANGING and not profile.prefers(Structure.RANGING):
        size -= 0.2

    if regime.volatility == VolatilityLevel.HIGH:
        if VolatilityLevel.HIGH in profile.preferred_volatility:
            tp *= 1.3
            sl *= 1.2
        else:
            size -= 0.2
            sl *= 1.4
    elif regime.volatility == VolatilityLevel.LOW:
        if VolatilityLevel.LOW not in profile.preferred_volatility:
            size -= 0.15
            tp *= 0.8

    if session_quality < 0.5:
        size -= 0.2
    elif session_quality >= 0.9:
        size += 0.1

    if aggression < 0.3:
        size *= 0.7
    elif aggression > 0.7:
        size *= 1.2

    return ProfileAdjustment(
        size_multiplier=_clamp(size, profile.min_size_factor, profile.max_size_factor),
        tp_adjust=_clamp(tp, 0.5, 2.0),
        sl_adjust=_clamp(sl, 0.5, 2.0),
    )


# -------------------------
# Adaptive sub-mode selection
# -------------------------

def recent_mode_performance(
    trades: Iterable[Trade],
    window: int = 20,
    modes: Sequence[str] = CONCRETE_MODES,
) -> dict[str, float]:
    """+1 per win, -0.5 per loss, per strategy, over the last `window` trades."""
    perf = {mode: 0.0 for mode in modes}
    ordered = sorted(trades, key=lambda t: t.closed_at)
    for trade in ordered[-window:] if window > 0 else []:
        if trade.strategy not in perf:
            continue
        perf[trade.strategy] += 1.0 if trade.is_win else -0.5
    return perf


def select_adaptive_sub_mode(
    regime: RegimeSnapshot,
    session_quality: float,
    aggression: float,
    performance: Optional[Mapping[str, float]] = None,
    candidates: Sequence[str] = CONCRETE_MODES,
) -> AdaptiveChoice:
    """
    Deterministic for identical inputs. Ties go to the earlier registry entry.
    """
    modes = [m for m in CONCRETE_MODES if m in candidates]
    if not modes:
        raise ValueError("no concrete modes available for adaptive selection")

    burst = scalper = trend = 50.0

    if regime.structure == Structure.TRENDING:
        trend += 25
        burst += 10
        scalper -= 5
    else:
        scalper += 20
        burst += 15
        trend -= 15

    if regime.volatility == VolatilityLevel.HIGH:
        burst += 20
        trend += 10
        scalper += 5
    elif regime.volatility == VolatilityLevel.LOW:
        scalper += 15
        burst -= 10
        trend -= 10

    if regime.trend_strength > 60:
        trend += 15
        burst += 5
    elif regime.trend_strength < 30:
        scalper += 10
        trend -= 20

    if session_quality >= 0.8:
        burst += 15
        trend += 10
    elif session_quality < 0.5:
        burst -= 10
        trend -= 15
        scalper += 5

    if aggression > 0.7:
        burst += 15
        scalper += 5
    elif aggression < 0.3:
        burst -= 15
        trend -= 5
        scalper += 10

    raw = {ModeKey.BURST.value: burst, ModeKey.SCALPER.value: scalper, ModeKey.TREND.value: trend}
    perf = performance or {}
    scores = {m: raw[m] + float(perf.get(m, 0.0)) * 5.0 for m in modes}

    # sorted() is stable, so equal scores keep registry order.
    ranked = sorted(modes, key=lambda m: -scores[m])
    winner = ranked[0]
    if len(ranked) > 1:
        gap = scores[winner] - scores[ranked[1]]
        confidence = _clamp(gap / 50.0 + 0.5, 0.0, 1.0)
    else:
        confidence = 1.0

    reasons = []
    if regime.structure == Structure.TRENDING:
        reasons.append("trending")
    if regime.volatility == VolatilityLevel.HIGH:
        reasons.append("high vol")
    if session_quality >= 0.8:
        reasons.append("prime session")
    if aggression > 0.7:
        reasons.append("aggressive")

    return AdaptiveChoice(
        mode=winner,
        scores=MappingProxyType(scores),
        confidence=confidence,
        reason=", ".join(reasons) if reasons else "balanced conditions",
    )
