"""
Paper Engine – Market data bundle + data health

The engine does not fetch prices. A collaborator hands it one MarketData per
tick: symbol -> PriceSnapshot, a provider/source tag, and a pause flag.

DataHealth watches consecutive empty deliveries and forces the pause flag
once a threshold is reached, until a non-empty delivery arrives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from paper_engine.config_types import PriceSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketData:
    snapshots: Mapping[str, PriceSnapshot] = field(default_factory=dict)
    source: str = "unknown"
    pause_trading: bool = False

    @classmethod
    def from_snapshots(
        cls,
        snapshots: Iterable[PriceSnapshot],
        source: str = "unknown",
        pause_trading: bool = False,
    ) -> "MarketData":
        return cls(
            snapshots={s.symbol: s for s in snapshots},
            source=source,
            pause_trading=pause_trading,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], now: Optional[datetime] = None) -> "MarketData":
        """
        Parse {"source", "pause_trading", "snapshots": [{symbol, bid, ask, ...}]}.

        mid defaults to the bid/ask midpoint; timestamp (ISO 8601) defaults to now.
        Malformed rows are skipped with a warning.
        """
        now = now or datetime.now(timezone.utc)
        out: dict[str, PriceSnapshot] = {}
        for row in payload.get("snapshots") or []:
            try:
                symbol = str(row["symbol"]).strip().upper()
                bid = float(row["bid"])
                ask = float(row["ask"])
                mid = float(row["mid"]) if row.get("mid") is not None else (bid + ask) / 2.0
                ts_raw = row.get("timestamp")
                ts = datetime.fromisoformat(ts_raw) if ts_raw else now
                vol = row.get("volatility")
                snap = PriceSnapshot(
                    symbol=symbol,
                    bid=bid,
                    ask=ask,
                    mid=mid,
                    timestamp=ts,
                    volatility=float(vol) if vol is not None else None,
                    regime_hint=row.get("regime_hint"),
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("skipping malformed snapshot row %r: %s", row, exc)
                continue
            out[symbol] = snap
        return cls(
            snapshots=out,
            source=str(payload.get("source") or "unknown"),
            pause_trading=bool(payload.get("pause_trading", False)),
        )

    def valid_snapshots(self) -> dict[str, PriceSnapshot]:
        return {sym: snap for sym, snap in self.snapshots.items() if snap.is_valid()}


class DataHealth:
    def __init__(self, failure_threshold: int = 3) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        self.failure_threshold = failure_threshold
        self.consecutive_failures = 0

    @property
    def should_pause(self) -> bool:
        return self.consecutive_failures >= self.failure_threshold

    def observe(self, market: MarketData) -> MarketData:
        if market.valid_snapshots():
            if self.consecutive_failures:
                logger.info("market data recovered (source=%s)", market.source)
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            logger.warning(
                "empty market data from %s (%d consecutive)",
                market.source,
                self.consecutive_failures,
            )
        if self.should_pause and not market.pause_trading:
            return replace(market, pause_trading=True)
        return market
