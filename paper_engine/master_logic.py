"""
Paper Engine – Decision Orchestrator ("master logic")

One decision per tick, in fixed order:
  thermostat -> effective mode -> position exits -> slot accounting
  -> entry gate (fresh session read) -> scoring -> filtering -> orders

This module is PURE apart from the injected entry gate, rng and batch-id
factory. It returns decisions; the tick runner persists them.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional, Sequence

from paper_engine.config_types import (
    Position,
    PriceSnapshot,
    ProposedOrder,
    RegimeSnapshot,
    ThermostatState,
    Trade,
)
from paper_engine.exits import ExitDecision, evaluate_positions
from paper_engine.mode_profiles import (
    AdaptiveChoice,
    ModeKey,
    recent_mode_performance,
    resolve_profile,
    select_adaptive_sub_mode,
)
from paper_engine.regime import aggregate_regime
from paper_engine.scoring import Candidate, rank_candidates
from paper_engine.settings import EngineSettings
from paper_engine.sizing import generate_orders, new_batch_id
from paper_engine.thermostat import ThermostatConfig, update_thermostat

logger = logging.getLogger(__name__)

# Returns None when entries may proceed, else a human-readable block reason.
EntryGate = Callable[[], Optional[str]]


@dataclass(frozen=True)
class DecisionContext:
    now: datetime
    settings: EngineSettings
    positions: Sequence[Position]
    snapshots: Mapping[str, PriceSnapshot]          # live + last-known, for exits
    entry_snapshots: Mapping[str, PriceSnapshot]    # live only, for entries
    regimes: Mapping[str, RegimeSnapshot]
    recent_trades: Sequence[Trade]
    today_pnl_percent: float
    equity: float
    session_quality: float
    prior_streak: int = 0
    burst_requested: bool = False
    burst_locked: bool = False
    symbols: Optional[Sequence[str]] = None
    rng: random.Random = field(default_factory=random.Random)
    batch_id_factory: Callable[[datetime], str] = new_batch_id
    thermostat_cfg: ThermostatConfig = field(default_factory=ThermostatConfig)


@dataclass(frozen=True)
class Decision:
    thermostat: ThermostatState
    effective_mode: Optional[str]
    adaptive: Optional[AdaptiveChoice]
    exits: list[ExitDecision]
    candidates: list[Candidate]
    orders: list[ProposedOrder]
    diagnostics: list[str]


def resolve_effective_mode(
    ctx: DecisionContext,
    thermostat: ThermostatState,
) -> tuple[Optional[str], Optional[AdaptiveChoice], list[str]]:
    """
    Burst request wins unless burst is locked or disabled; otherwise the
    selected mode, with adaptive resolved to a concrete sub-mode.
    """
    modes = ctx.settings.modes
    diags: list[str] = []
    burst = ModeKey.BURST.value

    if ctx.burst_requested:
        if ctx.burst_locked:
            diags.append("burst locked: daily profit target reached")
        elif not modes.is_enabled(burst):
            diags.append("burst requested but burst mode is disabled")
        else:
            return burst, None, diags

    selected = modes.selected
    if not modes.is_enabled(selected):
        diags.append(f"mode {selected} is disabled")
        return None, None, diags

    if selected != ModeKey.ADAPTIVE.value:
        if selected == burst and ctx.burst_locked:
            diags.append("burst locked: daily profit target reached")
            return None, None, diags
        return selected, None, diags

    choices = [m for m in modes.enabled_concrete() if not (m == burst and ctx.burst_locked)]
    if not choices:
        diags.append("adaptive has no enabled sub-modes")
        return None, None, diags

    market = aggregate_regime(ctx.regimes.values(), ctx.now)
    choice = select_adaptive_sub_mode(
        market,
        ctx.session_quality,
        thermostat.aggression,
        recent_mode_performance(ctx.recent_trades),
        candidates=choices,
    )
    diags.append(f"adaptive -> {choice.mode} ({choice.reason}, confidence {choice.confidence:.2f})")
    return choice.mode, choice, diags


def run_master_logic(ctx: DecisionContext, entry_gate: Optional[EntryGate] = None) -> Decision:
    settings = ctx.settings
    overrides = settings.modes.overrides

    thermostat = update_thermostat(
        ctx.recent_trades, ctx.today_pnl_percent, ctx.prior_streak, ctx.thermostat_cfg
    )
    mode, adaptive, diags = resolve_effective_mode(ctx, thermostat)

    exits = evaluate_positions(
        ctx.positions,
        ctx.snapshots,
        lambda key: resolve_profile(key, overrides),
        now=ctx.now,
        regimes=ctx.regimes,
        thermostat_tag=thermostat.tag,
    )

    closing_ids = {d.position.id for d in exits}
    remaining = [p for p in ctx.positions if p.id not in closing_ids]
    open_by_symbol: dict[str, int] = {}
    for p in remaining:
        open_by_symbol[p.symbol] = open_by_symbol.get(p.symbol, 0) + 1

    def _decision(candidates: list[Candidate], orders: list[ProposedOrder]) -> Decision:
        return Decision(
            thermostat=thermostat,
            effective_mode=mode,
            adaptive=adaptive,
            exits=exits,
            candidates=candidates,
            orders=orders,
            diagnostics=diags,
        )

    if mode is None:
        return _decision([], [])

    # Fresh read: a manual command may have landed since the tick began.
    blocked = entry_gate() if entry_gate is not None else None
    if blocked:
        diags.append(f"entries suppressed: {blocked}")
        return _decision([], [])

    profile = resolve_profile(mode, overrides)
    max_total = settings.risk.max_open_trades
    if adaptive is not None:
        max_total = min(max_total, resolve_profile(ModeKey.ADAPTIVE.value, overrides).max_total)

    candidates = rank_candidates(
        ctx.entry_snapshots,
        ctx.regimes,
        profile,
        aggression=thermostat.aggression,
        session_quality=ctx.session_quality,
        open_by_symbol=open_by_symbol,
        rng=ctx.rng,
        now=ctx.now,
        recent_trades=ctx.recent_trades,
        symbols=ctx.symbols,
    )

    batch_id = ctx.batch_id_factory(ctx.now) if mode == ModeKey.BURST.value else None
    orders = generate_orders(
        candidates,
        profile,
        thermostat,
        equity=ctx.equity,
        session_quality=ctx.session_quality,
        open_count=len(ctx.positions),
        closing_count=len(closing_ids),
        open_by_symbol=open_by_symbol,
        max_total=max_total,
        max_per_symbol=settings.risk.max_per_symbol,
        batch_id=batch_id,
    )

    if mode == ModeKey.BURST.value:
        open_burst = sum(1 for p in remaining if p.strategy == ModeKey.BURST.value)
        room = max(0, settings.burst.size - open_burst)
        if len(orders) > room:
            diags.append(f"burst cluster full ({open_burst}/{settings.burst.size})")
            orders = orders[:room]

    if candidates and not orders:
        diags.append(f"{len(candidates)} candidate(s) below threshold or out of slots")
    return _decision(candidates, orders)
