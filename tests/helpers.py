from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from paper_engine.config_types import (
    Bias,
    CloseReason,
    Position,
    PriceSnapshot,
    RegimeSnapshot,
    Side,
    Structure,
    Trade,
    VolatilityLevel,
)
from paper_engine.engine import PaperTradingEngine
from paper_engine.market_data import MarketData
from paper_engine.settings import EngineSettings
from paper_engine.state_store import StateStore

# Wednesday, inside the London/NY overlap (session quality 1.0)
NOW = datetime(2026, 3, 4, 14, 0, tzinfo=timezone.utc)
ACCOUNT = "acct"


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now = self.now + timedelta(minutes=minutes)


def snap(
    symbol: str = "EUR/USD",
    mid: float = 100.0,
    *,
    bid: Optional[float] = None,
    ask: Optional[float] = None,
    spread: float = 0.02,
    ts: datetime = NOW,
    **kwargs,
) -> PriceSnapshot:
    if bid is None:
        bid = mid - spread / 2.0
    if ask is None:
        ask = mid + spread / 2.0
    return PriceSnapshot(symbol=symbol, bid=bid, ask=ask, mid=mid, timestamp=ts, **kwargs)


def regime(
    symbol: str = "EUR/USD",
    *,
    bias: Bias = Bias.BULLISH,
    structure: Structure = Structure.TRENDING,
    volatility: VolatilityLevel = VolatilityLevel.NORMAL,
    trend_strength: float = 50.0,
    confidence: float = 0.7,
) -> RegimeSnapshot:
    return RegimeSnapshot(
        symbol=symbol,
        bias=bias,
        structure=structure,
        volatility=volatility,
        trend_strength=trend_strength,
        volatility_ratio=1.0,
        confidence=confidence,
        timestamp=NOW,
    )


def position(
    pid: str = "p1",
    symbol: str = "EUR/USD",
    *,
    strategy: str = "trend",
    side: Side = Side.LONG,
    size: float = 1.0,
    entry: float = 100.0,
    opened_at: datetime = NOW,
    **kwargs,
) -> Position:
    return Position(
        id=pid,
        symbol=symbol,
        strategy=strategy,
        side=side,
        size=size,
        entry_price=entry,
        opened_at=opened_at,
        **kwargs,
    )


def trade(
    pnl: float,
    *,
    minutes_ago: float = 0.0,
    symbol: str = "EUR/USD",
    strategy: str = "scalper",
    reason: CloseReason = CloseReason.TARGET_HIT,
) -> Trade:
    closed = NOW - timedelta(minutes=minutes_ago)
    return Trade(
        position_id=f"t-{symbol}-{minutes_ago}-{pnl}",
        symbol=symbol,
        strategy=strategy,
        side=Side.LONG,
        size=1.0,
        entry_price=100.0,
        exit_price=100.0 + pnl,
        realized_pnl=pnl,
        reason=reason,
        opened_at=closed - timedelta(minutes=5),
        closed_at=closed,
        session_date=closed.date().isoformat(),
    )


def trades_sequence(pnls: list[float], strategy: str = "scalper") -> list[Trade]:
    """Oldest first, one minute apart."""
    n = len(pnls)
    return [trade(p, minutes_ago=float(n - i), strategy=strategy) for i, p in enumerate(pnls)]


def market(*snaps: PriceSnapshot, source: str = "test", pause: bool = False) -> MarketData:
    return MarketData.from_snapshots(snaps, source=source, pause_trading=pause)


def make_engine(
    tmp_path: Path,
    *,
    settings: Optional[EngineSettings] = None,
    clock: Optional[FixedClock] = None,
    seed: int = 7,
    **kwargs,
) -> tuple[PaperTradingEngine, StateStore]:
    store = StateStore(str(tmp_path / "engine.sqlite"))
    counter = iter(range(1, 10_000))
    engine = PaperTradingEngine(
        store,
        ACCOUNT,
        settings=settings,
        rng=random.Random(seed),
        clock=clock or FixedClock(),
        batch_id_factory=lambda now: "burst_test",
        id_factory=lambda: f"pos-{next(counter)}",
        **kwargs,
    )
    return engine, store
