"""
Paper Engine – Canonical Types and Contracts

This file defines the data contracts shared by every engine component.
All decision and execution logic must conform to these types.

DO NOT add strategy logic here.
DO NOT add defaults that imply strategy changes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# -------------------------
# Market classification
# -------------------------

class Side(str, Enum):
    LONG = "long"
    SHORT = "short"


class Bias(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Structure(str, Enum):
    TRENDING = "trending"
    RANGING = "ranging"


class VolatilityLevel(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ThermostatTag(str, Enum):
    CALM = "calm"
    NORMAL = "normal"
    HOT = "hot"
    DANGER = "danger"


# -------------------------
# Session + lifecycle
# -------------------------

class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    HOLDING = "holding"
    STOPPED = "stopped"


class CloseReason(str, Enum):
    STOP_HIT = "stop_hit"
    TARGET_HIT = "target_hit"
    TRAILING_STOP = "trailing_stop"
    AGE_LIMIT = "age_limit"
    CUT_LOSER = "cut_loser"
    REGIME_FLIP = "regime_flip"
    MANUAL_TAKE_PROFIT = "take_profit"
    MANUAL_CLOSE_ALL = "close_all"
    RISK_HALT = "risk_halt"


# -------------------------
# Market snapshots
# -------------------------

@dataclass(frozen=True)
class PriceSnapshot:
    symbol: str
    bid: float
    ask: float
    mid: float
    timestamp: datetime
    volatility: Optional[float] = None     # mean abs bar return, percent
    regime_hint: Optional[str] = None      # provider tag, e.g. "trend", "high_vol"

    def is_valid(self) -> bool:
        for value in (self.bid, self.ask, self.mid):
            if value is None or not math.isfinite(value) or value <= 0:
                return False
        return bool(self.symbol)


@dataclass(frozen=True)
class RegimeSnapshot:
    symbol: str
    bias: Bias
    structure: Structure
    volatility: VolatilityLevel
    trend_strength: float          # 0-100
    volatility_ratio: float
    confidence: float              # 0-1
    timestamp: datetime


@dataclass(frozen=True)
class ThermostatState:
    aggression: float              # 0-1
    confidence: float              # 0-1
    win_rate: float                # 0-100
    pnl_percent: float
    streak: int
    tag: ThermostatTag


# -------------------------
# Positions + trades
# -------------------------

@dataclass
class Position:
    id: str
    symbol: str
    strategy: str
    side: Side
    size: float
    entry_price: float
    opened_at: datetime
    stop: Optional[float] = None
    target: Optional[float] = None
    unrealized_pnl: float = 0.0
    peak_pnl_percent: float = 0.0
    batch_id: Optional[str] = None

    def mark_price(self, snapshot: PriceSnapshot) -> float:
        # Longs exit into the bid, shorts into the ask.
        return snapshot.bid if self.side == Side.LONG else snapshot.ask

    def pnl_amount(self, price: float) -> float:
        diff = price - self.entry_price
        if self.side == Side.SHORT:
            diff = -diff
        return diff * self.size

    def pnl_percent(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        diff = price - self.entry_price
        if self.side == Side.SHORT:
            diff = -diff
        return diff / self.entry_price * 100.0

    def age_minutes(self, now: datetime) -> float:
        return (now - self.opened_at).total_seconds() / 60.0


@dataclass(frozen=True)
class Trade:
    position_id: str
    symbol: str
    strategy: str
    side: Side
    size: float
    entry_price: float
    exit_price: float
    realized_pnl: float
    reason: CloseReason
    opened_at: datetime
    closed_at: datetime
    session_date: str
    batch_id: Optional[str] = None

    @property
    def is_win(self) -> bool:
        return self.realized_pnl > 0


@dataclass(frozen=True)
class ProposedOrder:
    symbol: str
    side: Side
    size: float
    entry_price: float
    stop: float
    target: float
    strategy: str
    reason: str
    confidence: float
    quality: float
    batch_id: Optional[str] = None


# -------------------------
# Session state
# -------------------------

@dataclass
class SessionState:
    status: SessionStatus = SessionStatus.IDLE
    halted: bool = False
    halted_date: Optional[str] = None
    take_profit_requested: bool = False
    close_all_requested: bool = False
    take_burst_profit_requested: bool = False
    burst_requested: bool = False


# -------------------------
# Tick results
# -------------------------

@dataclass(frozen=True)
class TickStats:
    equity: float
    realized_equity: float
    today_pnl: float
    today_pnl_percent: float
    win_rate: float
    trades_today: int
    open_positions: int


@dataclass(frozen=True)
class TickOutcome:
    success: bool
    action: str                    # "tick", "take_profit", "close_all", "take_burst_profit", "risk_halt"
    session_status: SessionStatus
    halted: bool
    stats: Optional[TickStats] = None
    closed_count: int = 0
    opened_count: int = 0
    rejected_count: int = 0
    failed_count: int = 0
    effective_mode: Optional[str] = None
    diagnostics: list[str] = field(default_factory=list)
    error: Optional[str] = None
