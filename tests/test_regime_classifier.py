import math

import pandas as pd

from paper_engine.config_types import Bias, Structure, VolatilityLevel
from paper_engine.regime import PriceHistory, aggregate_regime, classify_regime
from tests.helpers import NOW, regime, snap


def _trend(start: float, step_pct: float, n: int = 20) -> list[float]:
    return [start * (1 + step_pct / 100.0) ** i for i in range(n)]


def test_insufficient_history_defaults() -> None:
    r = classify_regime("EUR/USD", [1.1, 1.2], now=NOW)
    assert r.bias == Bias.NEUTRAL
    assert r.structure == Structure.RANGING
    assert r.volatility == VolatilityLevel.NORMAL
    assert r.confidence == 0.4
    assert r.timestamp == NOW


def test_single_quote_uses_regime_hint() -> None:
    r = classify_regime("XAU/USD", None, snapshot=snap("XAU/USD", 2000.0, regime_hint="trend_high_vol"))
    assert r.structure == Structure.TRENDING
    assert r.volatility == VolatilityLevel.HIGH
    assert r.bias == Bias.NEUTRAL
    assert r.confidence == 0.4


def test_volatility_estimate_refines_default() -> None:
    r = classify_regime("EUR/USD", [], snapshot=snap(volatility=0.05))
    assert r.volatility == VolatilityLevel.LOW


def test_rising_prices_trend_bullish() -> None:
    r = classify_regime("BTC/USD", _trend(100.0, 1.0), now=NOW)
    assert r.structure == Structure.TRENDING
    assert r.bias == Bias.BULLISH
    assert r.volatility == VolatilityLevel.NORMAL
    assert r.trend_strength == 100.0
    assert r.confidence > 0.6


def test_falling_prices_trend_bearish() -> None:
    r = classify_regime("BTC/USD", pd.Series(_trend(100.0, -1.0)), now=NOW)
    assert r.structure == Structure.TRENDING
    assert r.bias == Bias.BEARISH


def test_flat_prices_range_with_low_volatility() -> None:
    r = classify_regime("EUR/USD", [1.1] * 20, now=NOW)
    assert r.structure == Structure.RANGING
    assert r.bias == Bias.NEUTRAL
    assert r.volatility == VolatilityLevel.LOW
    assert r.volatility_ratio == 1.0
    assert r.trend_strength == 0.0


def test_large_swings_are_high_volatility() -> None:
    prices = [100.0 if i % 2 == 0 else 103.0 for i in range(20)]
    r = classify_regime("ETH/USD", prices, now=NOW)
    assert r.volatility == VolatilityLevel.HIGH


def test_garbage_input_never_raises() -> None:
    r = classify_regime("EUR/USD", [None, "x", math.nan, -1.0, math.inf], now=NOW)
    assert r.structure == Structure.RANGING
    assert r.confidence == 0.4


def test_price_history_is_bounded() -> None:
    history = PriceHistory(maxlen=3)
    for i in range(5):
        history.record(snap(mid=100.0 + i))
    history.record(snap(mid=-1.0, bid=-1.0, ask=-1.0))
    assert history.series("EUR/USD").tolist() == [102.0, 103.0, 104.0]
    assert history.series("GBP/USD").empty


def test_aggregate_regime_majority() -> None:
    items = [
        regime("A", structure=Structure.TRENDING, volatility=VolatilityLevel.HIGH, trend_strength=80.0),
        regime("B", structure=Structure.TRENDING, volatility=VolatilityLevel.HIGH, trend_strength=60.0),
        regime("C", structure=Structure.RANGING, volatility=VolatilityLevel.LOW, bias=Bias.BEARISH, trend_strength=10.0),
    ]
    market = aggregate_regime(items, NOW)
    assert market.structure == Structure.TRENDING
    assert market.volatility == VolatilityLevel.HIGH
    assert market.bias == Bias.BULLISH
    assert market.trend_strength == 50.0


def test_aggregate_regime_empty_is_default() -> None:
    market = aggregate_regime([], NOW)
    assert market.symbol == "MARKET"
    assert market.structure == Structure.RANGING
