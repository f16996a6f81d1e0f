"""
Paper Engine – Tick Runner

One PaperTradingEngine instance is the single writer for one account. Each
run_tick() call is one discrete cycle:

1. Manual overrides (take-profit, close-all, take-burst-profit) are checked
   first and return immediately after an atomic close.
2. Mark-to-market, then the daily-loss halt check.
3. Master logic decides exits and entries; entries pass a fresh session read.
4. Exits are persisted, orders go through the execution guard, stats are
   written.

The clock is read once per tick. No exception escapes run_tick(); every call
returns a TickOutcome.
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional, Sequence

from config import cfg
from paper_engine.clocks import session_quality, trading_day, utc_now
from paper_engine.config_types import (
    CloseReason,
    Position,
    PriceSnapshot,
    ProposedOrder,
    SessionState,
    SessionStatus,
    TickOutcome,
    TickStats,
    Trade,
)
from paper_engine.errors import ExecutionError, OrderRejected, StoreError
from paper_engine.market_data import DataHealth, MarketData
from paper_engine.master_logic import DecisionContext, run_master_logic
from paper_engine.mode_profiles import ModeKey
from paper_engine.paper_sim import ExecutionGuard, build_order_request
from paper_engine.regime import PriceHistory, RegimeConfig, classify_regime
from paper_engine.settings import EngineSettings
from paper_engine.sizing import new_batch_id
from paper_engine.state_machine import SessionAction, entries_allowed, transition
from paper_engine.state_store import StateStore

logger = logging.getLogger(__name__)

ACTION_TICK = "tick"
ACTION_TAKE_PROFIT = "take_profit"
ACTION_CLOSE_ALL = "close_all"
ACTION_TAKE_BURST_PROFIT = "take_burst_profit"
ACTION_RISK_HALT = "risk_halt"


def _new_position_id() -> str:
    return uuid.uuid4().hex


def summarize_stats(trades: Sequence[Trade], positions: Sequence[Position], start_equity: float) -> TickStats:
    """equity is marked (start + realized + unrealized); realized_equity is closed-book."""
    realized = sum(t.realized_pnl for t in trades)
    today_pnl = realized + sum(p.unrealized_pnl for p in positions)
    wins = sum(1 for t in trades if t.is_win)
    return TickStats(
        equity=start_equity + today_pnl,
        realized_equity=start_equity + realized,
        today_pnl=today_pnl,
        today_pnl_percent=today_pnl / start_equity * 100.0 if start_equity > 0 else 0.0,
        win_rate=wins / len(trades) * 100.0 if trades else 0.0,
        trades_today=len(trades),
        open_positions=len(positions),
    )


def _daily_row(today: str, stats: TickStats) -> tuple[str, float, float, int]:
    return (today, stats.realized_equity, stats.win_rate, stats.trades_today)


class PaperTradingEngine:
    def __init__(
        self,
        store: StateStore,
        account_id: str = cfg.DEFAULT_ACCOUNT,
        *,
        settings: Optional[EngineSettings] = None,
        guard: Optional[ExecutionGuard] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
        batch_id_factory: Callable[[datetime], str] = new_batch_id,
        id_factory: Callable[[], str] = _new_position_id,
        symbols: Optional[Sequence[str]] = None,
        data_health: Optional[DataHealth] = None,
        regime_cfg: Optional[RegimeConfig] = None,
    ) -> None:
        self.store = store
        self.account_id = account_id
        self.guard = guard or ExecutionGuard(live=cfg.LIVE_TRADING)
        self.rng = rng or random.Random()
        self.symbols = list(symbols) if symbols else None
        self._clock = clock
        self._batch_id_factory = batch_id_factory
        self._id_factory = id_factory
        self._data_health = data_health or DataHealth(cfg.DATA_FAILURE_THRESHOLD)
        self._regime_cfg = regime_cfg or RegimeConfig(
            short_window=cfg.REGIME_SHORT_WINDOW,
            long_window=cfg.REGIME_LONG_WINDOW,
            min_samples=cfg.REGIME_MIN_SAMPLES,
        )
        self._history = PriceHistory(cfg.PRICE_HISTORY_LEN)
        self._last_known: dict[str, PriceSnapshot] = {}
        self._streak = 0
        self._data_paused = False

        store.ensure_account(account_id, settings)

    # -------------------------
    # Session commands
    # -------------------------

    def _apply(self, action: SessionAction) -> SessionState:
        state = self.store.load_session(self.account_id)
        new_state = transition(state, action, now=self._clock())
        self.store.save_session(self.account_id, new_state)
        self._event(
            "INFO",
            "SESSION",
            f"{action.value}: {state.status.value} -> {new_state.status.value}",
        )
        return new_state

    def start(self) -> SessionState:
        return self._apply(SessionAction.START)

    def pause(self) -> SessionState:
        return self._apply(SessionAction.PAUSE)

    def resume(self) -> SessionState:
        return self._apply(SessionAction.RESUME)

    def stop(self) -> SessionState:
        return self._apply(SessionAction.STOP)

    def reset_day(self) -> SessionState:
        self._streak = 0
        return self._apply(SessionAction.RESET)

    def request_take_profit(self) -> None:
        self.store.set_request_flag(self.account_id, "take_profit_requested")

    def request_close_all(self) -> None:
        self.store.set_request_flag(self.account_id, "close_all_requested")

    def request_take_burst_profit(self) -> None:
        self.store.set_request_flag(self.account_id, "take_burst_profit_requested")

    def request_burst(self, enabled: bool = True) -> None:
        self.store.set_request_flag(self.account_id, "burst_requested", enabled)

    # -------------------------
    # Tick
    # -------------------------

    def run_tick(
        self,
        market: Optional[MarketData] = None,
        *,
        take_profit: bool = False,
        close_all: bool = False,
        take_burst_profit: bool = False,
        burst_requested: Optional[bool] = None,
    ) -> TickOutcome:
        now = self._clock()
        today = trading_day(now)
        market = market or MarketData()
        session: Optional[SessionState] = None
        action = ACTION_TICK

        try:
            session = self.store.load_session(self.account_id)

            # Manual overrides first; nothing below runs once one is detected.
            if take_profit or session.take_profit_requested:
                action = ACTION_TAKE_PROFIT
                return self._manual_close(action, now, today, session, market)
            if close_all or session.close_all_requested:
                action = ACTION_CLOSE_ALL
                return self._manual_close(action, now, today, session, market)
            if take_burst_profit or session.take_burst_profit_requested:
                action = ACTION_TAKE_BURST_PROFIT
                return self._manual_close(action, now, today, session, market)

            return self._automatic_tick(now, today, session, market, burst_requested)
        except Exception as exc:
            logger.exception("tick failed for account %s (action=%s)", self.account_id, action)
            self._event("ERROR", "ENGINE", f"{action} failed: {exc}")
            return TickOutcome(
                success=False,
                action=action,
                session_status=session.status if session is not None else SessionStatus.IDLE,
                halted=session.halted if session is not None else False,
                diagnostics=[f"{action} aborted: {type(exc).__name__}"],
                error=str(exc),
            )

    # -------------------------
    # Manual overrides
    # -------------------------

    def _manual_close(
        self,
        action: str,
        now: datetime,
        today: str,
        session: SessionState,
        market: MarketData,
    ) -> TickOutcome:
        positions = self.store.list_positions(self.account_id)
        if action == ACTION_TAKE_BURST_PROFIT:
            positions = [p for p in positions if p.strategy == ModeKey.BURST.value]

        reason = CloseReason.MANUAL_CLOSE_ALL if action == ACTION_CLOSE_ALL else CloseReason.MANUAL_TAKE_PROFIT
        prices = self._price_book(market)
        trades = [
            self._close_trade(p, self._exit_price(p, prices), reason, now, today)
            for p in positions
        ]

        if action == ACTION_CLOSE_ALL:
            new_session = transition(session, SessionAction.CLOSE_ALL)
        elif action == ACTION_TAKE_PROFIT:
            new_session = replace(session, take_profit_requested=False)
        else:
            new_session = replace(session, take_burst_profit_requested=False, burst_requested=False)

        realized = sum(t.realized_pnl for t in trades)
        message = f"{action}: closed {len(trades)} position(s), realized {realized:+.2f}"
        start_equity = self.store.ensure_daily_stats(self.account_id, today)
        closing = {p.id for p in positions}
        stats = summarize_stats(
            self.store.list_trades(self.account_id, today) + trades,
            [p for p in self.store.list_positions(self.account_id) if p.id not in closing],
            start_equity,
        )
        try:
            self.store.close_positions(
                self.account_id,
                trades,
                session=new_session,
                event=("INFO", "MANUAL", message),
                daily_stats=_daily_row(today, stats),
            )
        except StoreError as exc:
            logger.error("MANUAL %s failed for %s: %s", action, self.account_id, exc)
            self._event("ERROR", "MANUAL", f"{action} failed: {exc}")
            return TickOutcome(
                success=False,
                action=action,
                session_status=session.status,
                halted=session.halted,
                diagnostics=[f"{action} failed; no positions were closed"],
                error=str(exc),
            )

        logger.info("MANUAL %s", message)
        return TickOutcome(
            success=True,
            action=action,
            session_status=new_session.status,
            halted=new_session.halted,
            stats=stats,
            closed_count=len(trades),
        )

    # -------------------------
    # Automatic cycle
    # -------------------------

    def _automatic_tick(
        self,
        now: datetime,
        today: str,
        session: SessionState,
        market: MarketData,
        burst_requested: Optional[bool],
    ) -> TickOutcome:
        acct = self.account_id
        settings = self.store.load_settings(acct)
        start_equity = self.store.ensure_daily_stats(acct, today)
        diagnostics: list[str] = []

        market = self._data_health.observe(market)
        live = market.valid_snapshots()
        self._history.record_all(live.values())
        self._last_known.update(live)
        prices = dict(self._last_known)
        if market.pause_trading:
            diagnostics.append(f"market data unavailable (source={market.source}); entries suppressed")
        if market.pause_trading != self._data_paused:
            self._data_paused = market.pause_trading
            if market.pause_trading:
                self._event("WARN", "DATA", f"market data paused (source={market.source})")
            else:
                self._event("INFO", "DATA", f"market data resumed (source={market.source})")

        positions = self.store.list_positions(acct)
        today_trades = self.store.list_trades(acct, today)

        self._mark_to_market(positions, prices)
        realized = sum(t.realized_pnl for t in today_trades)
        unrealized = sum(p.unrealized_pnl for p in positions)
        pnl_pct = (realized + unrealized) / start_equity * 100.0 if start_equity > 0 else 0.0

        max_loss = settings.risk.max_daily_loss_pct
        if not session.halted and pnl_pct <= -max_loss:
            return self._risk_halt(now, today, session, positions, prices, pnl_pct, max_loss, start_equity)
        if session.halted:
            diagnostics.append("trading halted for the day")

        if burst_requested is not None and burst_requested != session.burst_requested:
            self.store.set_request_flag(acct, "burst_requested", burst_requested)
            session = replace(session, burst_requested=burst_requested)

        burst_pnl_pct = self._burst_pnl_percent(today_trades, start_equity)
        burst_locked = burst_pnl_pct >= settings.burst.daily_profit_target_pct

        regimes = {
            sym: classify_regime(sym, self._history.series(sym), snapshot=snap, now=now, cfg=self._regime_cfg)
            for sym, snap in prices.items()
        }

        ctx = DecisionContext(
            now=now,
            settings=settings,
            positions=positions,
            snapshots=prices,
            entry_snapshots={} if market.pause_trading else live,
            regimes=regimes,
            recent_trades=self.store.recent_trades(acct, cfg.RECENT_TRADES_LIMIT),
            today_pnl_percent=pnl_pct,
            equity=start_equity + realized + unrealized,
            session_quality=session_quality(now),
            prior_streak=self._streak,
            burst_requested=session.burst_requested,
            burst_locked=burst_locked,
            symbols=self._universe(live),
            rng=self.rng,
            batch_id_factory=self._batch_id_factory,
        )
        decision = run_master_logic(ctx, entry_gate=lambda: self._entry_block(market))
        self._streak = decision.thermostat.streak
        diagnostics.extend(decision.diagnostics)

        for exit_decision in decision.exits:
            trade = self._close_trade(
                exit_decision.position, exit_decision.exit_price, exit_decision.reason, now, today
            )
            self.store.close_positions(acct, [trade])
            logger.info(
                "EXIT %s %s %s pnl=%+.2f (%s)",
                trade.symbol,
                trade.side.value,
                trade.strategy,
                trade.realized_pnl,
                trade.reason.value,
            )
        if decision.exits:
            self._event("INFO", "MODE", f"Closed {len(decision.exits)} position(s)")

        opened, rejected, failed = self._execute_orders(decision.orders, now, diagnostics)
        if opened:
            self._event("INFO", "MODE", f"Opened {opened} position(s) [{decision.effective_mode}]")
        if rejected or failed:
            self._event("WARN", "RISK", f"{rejected + failed} order(s) blocked")

        stats = summarize_stats(self.store.list_trades(acct, today), self.store.list_positions(acct), start_equity)
        self.store.update_daily_stats(
            acct,
            today,
            ending_equity=stats.realized_equity,
            win_rate=stats.win_rate,
            trade_count=stats.trades_today,
        )

        fresh = self.store.load_session(acct)
        return TickOutcome(
            success=True,
            action=ACTION_TICK,
            session_status=fresh.status,
            halted=fresh.halted,
            stats=stats,
            closed_count=len(decision.exits),
            opened_count=opened,
            rejected_count=rejected,
            failed_count=failed,
            effective_mode=decision.effective_mode,
            diagnostics=diagnostics,
        )

    def _risk_halt(
        self,
        now: datetime,
        today: str,
        session: SessionState,
        positions: Sequence[Position],
        prices: Mapping[str, PriceSnapshot],
        pnl_pct: float,
        max_loss: float,
        start_equity: float,
    ) -> TickOutcome:
        trades = [
            self._close_trade(p, self._exit_price(p, prices), CloseReason.RISK_HALT, now, today)
            for p in positions
        ]
        halted = transition(session, SessionAction.HALT, now=now)
        message = (
            f"Trading HALTED: daily P&L {pnl_pct:.2f}% breached -{max_loss:.2f}%; "
            f"closed {len(trades)} position(s)"
        )
        stats = summarize_stats(self.store.list_trades(self.account_id, today) + trades, [], start_equity)
        # Session-critical: a failure here propagates and aborts the tick.
        self.store.close_positions(
            self.account_id,
            trades,
            session=halted,
            event=("ERROR", "RISK", message),
            daily_stats=_daily_row(today, stats),
        )
        logger.error("RISK %s (account=%s)", message, self.account_id)

        return TickOutcome(
            success=True,
            action=ACTION_RISK_HALT,
            session_status=halted.status,
            halted=True,
            stats=stats,
            closed_count=len(trades),
            diagnostics=[message],
        )

    # -------------------------
    # Helpers
    # -------------------------

    def _entry_block(self, market: MarketData) -> Optional[str]:
        if market.pause_trading:
            return f"market data paused ({market.source})"
        fresh = self.store.load_session(self.account_id)
        if fresh.take_profit_requested or fresh.close_all_requested or fresh.take_burst_profit_requested:
            return "manual override pending"
        if not entries_allowed(fresh):
            return "trading halted for the day" if fresh.halted else f"session {fresh.status.value}"
        return None

    def _universe(self, live: Mapping[str, PriceSnapshot]) -> list[str]:
        if self.symbols is None:
            return list(live)
        return [s for s in self.symbols if s in live]

    def _price_book(self, market: MarketData) -> dict[str, PriceSnapshot]:
        prices = dict(self._last_known)
        prices.update(market.valid_snapshots())
        return prices

    @staticmethod
    def _exit_price(position: Position, prices: Mapping[str, PriceSnapshot]) -> float:
        snap = prices.get(position.symbol)
        if snap is None:
            return position.entry_price
        return position.mark_price(snap)

    def _mark_to_market(self, positions: Iterable[Position], prices: Mapping[str, PriceSnapshot]) -> None:
        marks: list[tuple[str, float, float]] = []
        for p in positions:
            snap = prices.get(p.symbol)
            if snap is None:
                continue
            price = p.mark_price(snap)
            p.unrealized_pnl = p.pnl_amount(price)
            p.peak_pnl_percent = max(p.peak_pnl_percent, p.pnl_percent(price))
            marks.append((p.id, p.unrealized_pnl, p.peak_pnl_percent))
        self.store.update_marks(self.account_id, marks)

    @staticmethod
    def _close_trade(
        position: Position,
        exit_price: float,
        reason: CloseReason,
        now: datetime,
        today: str,
    ) -> Trade:
        return Trade(
            position_id=position.id,
            symbol=position.symbol,
            strategy=position.strategy,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            exit_price=exit_price,
            realized_pnl=position.pnl_amount(exit_price),
            reason=reason,
            opened_at=position.opened_at,
            closed_at=now,
            session_date=today,
            batch_id=position.batch_id,
        )

    @staticmethod
    def _burst_pnl_percent(trades: Iterable[Trade], start_equity: float) -> float:
        if start_equity <= 0:
            return 0.0
        burst = sum(t.realized_pnl for t in trades if t.strategy == ModeKey.BURST.value)
        return burst / start_equity * 100.0

    def _execute_orders(
        self,
        orders: Sequence[ProposedOrder],
        now: datetime,
        diagnostics: list[str],
    ) -> tuple[int, int, int]:
        """Returns (opened, rejected, failed). One bad order never stops the rest."""
        opened = rejected = failed = 0
        for order in orders:
            try:
                request = build_order_request(order)
            except OrderRejected as exc:
                rejected += 1
                logger.warning("order rejected %s: %s", exc.code, exc)
                diagnostics.append(f"order rejected ({exc.code})")
                continue

            try:
                fill = self.guard.execute(request, now)
            except ExecutionError as exc:
                failed += 1
                logger.error("execution failed for %s: %s", request.symbol, exc)
                diagnostics.append(f"execution failed for {request.symbol}")
                continue

            position = Position(
                id=self._id_factory(),
                symbol=fill.symbol,
                strategy=request.strategy,
                side=fill.side,
                size=fill.size,
                entry_price=fill.price,
                opened_at=now,
                stop=request.stop,
                target=request.target,
                batch_id=request.batch_id,
            )
            try:
                self.store.insert_position(self.account_id, position)
            except StoreError as exc:
                failed += 1
                logger.error("position insert failed for %s: %s", position.symbol, exc)
                diagnostics.append(f"position insert failed for {position.symbol}")
                continue

            opened += 1
            logger.info(
                "ENTRY %s %s %s size=%.4f @ %.5f",
                position.symbol,
                position.side.value,
                position.strategy,
                position.size,
                position.entry_price,
            )
        return opened, rejected, failed

    def _event(self, level: str, source: str, message: str) -> None:
        try:
            self.store.log_event(self.account_id, level, source, message)
        except StoreError as exc:
            logger.warning("event log write failed (%s %s): %s", source, message, exc)
