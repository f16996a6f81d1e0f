"""
Paper Engine – Execution Guard (deterministic paper fills)

Validates a proposed order into an OrderRequest, then:
- paper: fills immediately at the requested price
- live: forwards to a BrokerAdapter (none ships with the engine)

Rejected orders raise OrderRejected and are never persisted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Union

from paper_engine.config_types import ProposedOrder, Side
from paper_engine.errors import ExecutionError, OrderRejected

logger = logging.getLogger(__name__)

NO_PARAMS = "NO_PARAMS"
NO_SYMBOL = "NO_SYMBOL"
NO_SIDE = "NO_SIDE"
NON_POSITIVE_SIZE = "NON_POSITIVE_SIZE"
NO_PRICE = "NO_PRICE"


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    size: float
    price: float
    strategy: str
    stop: Optional[float] = None
    target: Optional[float] = None
    batch_id: Optional[str] = None


@dataclass(frozen=True)
class Fill:
    symbol: str
    side: Side
    size: float
    price: float
    filled_at: datetime
    venue: str = "paper"


class BrokerAdapter(Protocol):
    def submit(self, request: OrderRequest, now: datetime) -> Fill:
        ...


def _as_float(value: Any) -> Optional[float]:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def build_order_request(order: Union[ProposedOrder, Mapping[str, Any], None]) -> OrderRequest:
    """
    Normalize a ProposedOrder (or a plain mapping from an outer surface).
    """
    if order is None:
        raise OrderRejected(NO_PARAMS, "order parameters missing")

    if isinstance(order, ProposedOrder):
        raw: Mapping[str, Any] = {
            "symbol": order.symbol,
            "side": order.side,
            "size": order.size,
            "price": order.entry_price,
            "strategy": order.strategy,
            "stop": order.stop,
            "target": order.target,
            "batch_id": order.batch_id,
        }
    else:
        raw = order

    symbol = str(raw.get("symbol") or "").strip().upper()
    if not symbol:
        raise OrderRejected(NO_SYMBOL, "order has no symbol")

    try:
        side = Side(raw.get("side"))
    except ValueError:
        raise OrderRejected(NO_SIDE, f"order for {symbol} has no valid side") from None

    size = _as_float(raw.get("size"))
    if size is None or size <= 0:
        raise OrderRejected(NON_POSITIVE_SIZE, f"order for {symbol} has non-positive size")

    price = _as_float(raw.get("price", raw.get("entry_price")))
    if price is None or price <= 0:
        raise OrderRejected(NO_PRICE, f"order for {symbol} has no usable price")

    return OrderRequest(
        symbol=symbol,
        side=side,
        size=size,
        price=price,
        strategy=str(raw.get("strategy") or "manual"),
        stop=_as_float(raw.get("stop")),
        target=_as_float(raw.get("target")),
        batch_id=raw.get("batch_id"),
    )


class ExecutionGuard:
    def __init__(self, live: bool = False, broker: Optional[BrokerAdapter] = None) -> None:
        self.live = live
        self.broker = broker

    def execute(self, request: OrderRequest, now: datetime) -> Fill:
        if self.live:
            if self.broker is None:
                raise ExecutionError("live execution requested but no broker adapter is configured")
            return self.broker.submit(request, now)

        return Fill(
            symbol=request.symbol,
            side=request.side,
            size=request.size,
            price=request.price,
            filled_at=now,
        )
