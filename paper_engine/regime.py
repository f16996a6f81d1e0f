"""
Paper Engine – Regime Classifier

Derives a RegimeSnapshot (structure, volatility bucket, directional bias,
confidence) for one symbol from its rolling mid-price history.

Baseline:
- Short / long simple moving averages (5 / 20 samples)
- Structure "trending" when the averages diverge by more than 0.2%
- Volatility from the mean absolute bar-to-bar return
  (>1.5% -> HIGH, <0.2% -> LOW, else NORMAL)

This module is PURE apart from PriceHistory, which is a per-engine buffer:
- No I/O
- Never raises on missing or malformed data; always returns a best-effort
  snapshot.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from paper_engine.config_types import (
    Bias,
    PriceSnapshot,
    RegimeSnapshot,
    Structure,
    VolatilityLevel,
)

logger = logging.getLogger(__name__)

PriceInput = Union[pd.Series, Sequence[float], None]


@dataclass(frozen=True)
class RegimeConfig:
    short_window: int = 5
    long_window: int = 20
    min_samples: int = 5

    # Divergence between short and long average, percent of long average
    trend_divergence_pct: float = 0.2

    # Mean absolute bar-to-bar return, percent
    high_vol_pct: float = 1.5
    low_vol_pct: float = 0.2

    default_confidence: float = 0.4
    max_confidence: float = 0.95


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _clean_prices(prices: PriceInput) -> pd.Series:
    if prices is None:
        return pd.Series(dtype="float64")
    try:
        s = pd.to_numeric(pd.Series(prices), errors="coerce")
    except (TypeError, ValueError):
        return pd.Series(dtype="float64")
    s = s.replace([np.inf, -np.inf], np.nan).dropna()
    s = s[s > 0]
    return s.reset_index(drop=True).astype("float64")


def _volatility_level(mean_abs_return_pct: float, cfg: RegimeConfig) -> VolatilityLevel:
    if mean_abs_return_pct > cfg.high_vol_pct:
        return VolatilityLevel.HIGH
    if mean_abs_return_pct < cfg.low_vol_pct:
        return VolatilityLevel.LOW
    return VolatilityLevel.NORMAL


def default_regime(
    symbol: str,
    now: datetime,
    snapshot: Optional[PriceSnapshot] = None,
    cfg: Optional[RegimeConfig] = None,
) -> RegimeSnapshot:
    """
    Insufficient-history fallback: neutral / ranging / normal, low confidence.

    A provider regime hint or volatility estimate on the snapshot refines the
    default; neither raises the confidence.
    """
    cfg = cfg or RegimeConfig()
    bias = Bias.NEUTRAL
    structure = Structure.RANGING
    volatility = VolatilityLevel.NORMAL

    if snapshot is not None:
        if snapshot.volatility is not None and np.isfinite(snapshot.volatility):
            volatility = _volatility_level(float(snapshot.volatility), cfg)

        hint = (snapshot.regime_hint or "").strip().lower()
        if "trend" in hint:
            structure = Structure.TRENDING
        elif "range" in hint:
            structure = Structure.RANGING
        if "high" in hint:
            volatility = VolatilityLevel.HIGH
        elif "low" in hint:
            volatility = VolatilityLevel.LOW
        if "bull" in hint:
            bias = Bias.BULLISH
        elif "bear" in hint:
            bias = Bias.BEARISH

    return RegimeSnapshot(
        symbol=symbol,
        bias=bias,
        structure=structure,
        volatility=volatility,
        trend_strength=0.0,
        volatility_ratio=1.0,
        confidence=cfg.default_confidence,
        timestamp=now,
    )


def classify_regime(
    symbol: str,
    prices: PriceInput,
    *,
    snapshot: Optional[PriceSnapshot] = None,
    now: Optional[datetime] = None,
    cfg: Optional[RegimeConfig] = None,
) -> RegimeSnapshot:
    """
    prices must be ordered oldest -> newest (mid prices).

    When no history is supplied the latest snapshot mid is used as a single
    sample, which always resolves to the default snapshot.
    """
    cfg = cfg or RegimeConfig()
    if now is None:
        now = snapshot.timestamp if snapshot is not None else datetime.now(timezone.utc)

    s = _clean_prices(prices)
    if s.empty and snapshot is not None:
        s = _clean_prices([snapshot.mid])

    if len(s) < cfg.min_samples:
        return default_regime(symbol, now, snapshot, cfg)

    long_n = min(cfg.long_window, len(s))
    short_n = min(cfg.short_window, long_n)
    short_ma = float(s.rolling(short_n).mean().iloc[-1])
    long_ma = float(s.rolling(long_n).mean().iloc[-1])
    if not np.isfinite(short_ma) or not np.isfinite(long_ma) or long_ma <= 0:
        return default_regime(symbol, now, snapshot, cfg)

    divergence_pct = (short_ma - long_ma) / long_ma * 100.0
    magnitude = abs(divergence_pct)

    structure = Structure.TRENDING if magnitude > cfg.trend_divergence_pct else Structure.RANGING

    # Sub-noise divergence carries no directional information.
    if magnitude < cfg.trend_divergence_pct / 4.0:
        bias = Bias.NEUTRAL
    elif divergence_pct > 0:
        bias = Bias.BULLISH
    else:
        bias = Bias.BEARISH

    abs_returns = s.pct_change().abs().dropna() * 100.0
    mean_abs_return = float(abs_returns.mean()) if not abs_returns.empty else 0.0
    volatility = _volatility_level(mean_abs_return, cfg)

    recent_abs_return = float(abs_returns.tail(short_n).mean()) if not abs_returns.empty else 0.0
    volatility_ratio = recent_abs_return / mean_abs_return if mean_abs_return > 0 else 1.0

    trend_strength = _clamp(magnitude / cfg.trend_divergence_pct * 50.0, 0.0, 100.0)

    magnitude_factor = min(1.0, magnitude / (cfg.trend_divergence_pct * 2.0))
    coverage = min(1.0, len(s) / float(cfg.long_window))
    confidence = _clamp(0.3 + 0.6 * magnitude_factor * coverage, 0.0, cfg.max_confidence)

    return RegimeSnapshot(
        symbol=symbol,
        bias=bias,
        structure=structure,
        volatility=volatility,
        trend_strength=round(trend_strength, 4),
        volatility_ratio=round(volatility_ratio, 4),
        confidence=round(confidence, 4),
        timestamp=now,
    )


def aggregate_regime(
    regimes: Iterable[RegimeSnapshot],
    now: datetime,
    symbol: str = "MARKET",
) -> RegimeSnapshot:
    """
    Market-level view across symbols: majority structure, volatility and bias;
    mean trend strength, volatility ratio and confidence.

    Ties resolve to ranging / normal / neutral.
    """
    items = list(regimes)
    if not items:
        return default_regime(symbol, now)

    structures = Counter(r.structure for r in items)
    structure = (
        Structure.TRENDING
        if structures[Structure.TRENDING] > structures[Structure.RANGING]
        else Structure.RANGING
    )

    vols = Counter(r.volatility for r in items)
    top_vol = max(vols.values())
    leaders = [v for v, n in vols.items() if n == top_vol]
    volatility = leaders[0] if len(leaders) == 1 else VolatilityLevel.NORMAL

    biases = Counter(r.bias for r in items)
    if biases[Bias.BULLISH] > biases[Bias.BEARISH]:
        bias = Bias.BULLISH
    elif biases[Bias.BEARISH] > biases[Bias.BULLISH]:
        bias = Bias.BEARISH
    else:
        bias = Bias.NEUTRAL

    n = float(len(items))
    return RegimeSnapshot(
        symbol=symbol,
        bias=bias,
        structure=structure,
        volatility=volatility,
        trend_strength=sum(r.trend_strength for r in items) / n,
        volatility_ratio=sum(r.volatility_ratio for r in items) / n,
        confidence=sum(r.confidence for r in items) / n,
        timestamp=now,
    )


class PriceHistory:
    """Bounded per-symbol buffer of mid prices, oldest -> newest."""

    def __init__(self, maxlen: int = 60) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be positive")
        self.maxlen = maxlen
        self._buffers: dict[str, deque[float]] = {}

    def record(self, snapshot: PriceSnapshot) -> None:
        if not snapshot.is_valid():
            return
        buf = self._buffers.setdefault(snapshot.symbol, deque(maxlen=self.maxlen))
        buf.append(float(snapshot.mid))

    def record_all(self, snapshots: Iterable[PriceSnapshot]) -> None:
        for snap in snapshots:
            self.record(snap)

    def series(self, symbol: str) -> pd.Series:
        return pd.Series(list(self._buffers.get(symbol, ())), dtype="float64")

    def __len__(self) -> int:
        return len(self._buffers)
