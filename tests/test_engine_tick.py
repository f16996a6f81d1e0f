from dataclasses import replace

import pytest

from paper_engine.config_types import CloseReason, SessionStatus, Side, Trade
from paper_engine.errors import SessionTransitionError, StoreError
from tests.helpers import ACCOUNT, NOW, FixedClock, make_engine, market, position, snap

HINTED = ("EUR/USD", "GBP/USD", "USD/JPY")


def _hinted_market(**kwargs):
    return market(*(snap(s, regime_hint="trend_bull") for s in HINTED), **kwargs)


def test_idle_session_marks_but_does_not_enter(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    outcome = engine.run_tick(_hinted_market())
    assert outcome.success
    assert outcome.action == "tick"
    assert outcome.session_status == SessionStatus.IDLE
    assert outcome.opened_count == 0
    assert "entries suppressed: session idle" in outcome.diagnostics
    assert store.count_positions(ACCOUNT) == 0


def _rising(step: int):
    return market(*(snap(s, 100.0 + 0.5 * step) for s in HINTED))


def test_running_adaptive_tick_opens_sub_mode_position(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    # idle ticks still build price history for the regime classifier
    for step in range(9):
        engine.run_tick(_rising(step))
    engine.start()
    outcome = engine.run_tick(_rising(9))

    assert outcome.success
    assert outcome.effective_mode == "trend"
    assert outcome.opened_count == 1
    assert outcome.stats.open_positions == 1
    assert outcome.stats.win_rate == 0.0
    assert outcome.stats.equity == 10_000.0
    assert any(d.startswith("adaptive -> trend") for d in outcome.diagnostics)

    held = store.list_positions(ACCOUNT)
    assert [(p.id, p.symbol, p.strategy, p.side) for p in held] == [("pos-1", "EUR/USD", "trend", Side.LONG)]
    assert held[0].entry_price == pytest.approx(104.51)
    assert held[0].batch_id is None
    assert any(e["message"] == "Opened 1 position(s) [trend]" for e in store.list_events(ACCOUNT))


def test_burst_request_opens_tagged_cluster(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()
    outcome = engine.run_tick(_hinted_market(), burst_requested=True)

    assert outcome.effective_mode == "burst"
    assert outcome.opened_count == 3
    assert {p.batch_id for p in store.list_positions(ACCOUNT)} == {"burst_test"}
    assert store.load_session(ACCOUNT).burst_requested

    # the flag persists across ticks until turned off
    engine.run_tick(_hinted_market(), burst_requested=False)
    assert not store.load_session(ACCOUNT).burst_requested


def test_partial_insert_failure_keeps_other_orders(tmp_path, monkeypatch) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()
    real_insert = store.insert_position
    calls = []

    def flaky_insert(account_id, p):
        calls.append(p.symbol)
        if len(calls) == 2:
            raise StoreError("disk full")
        real_insert(account_id, p)

    monkeypatch.setattr(store, "insert_position", flaky_insert)
    outcome = engine.run_tick(_hinted_market(), burst_requested=True)

    assert outcome.success
    assert (outcome.opened_count, outcome.failed_count) == (2, 1)
    assert "position insert failed for GBP/USD" in outcome.diagnostics
    assert [p.symbol for p in store.list_positions(ACCOUNT)] == ["EUR/USD", "USD/JPY"]


def test_daily_loss_limit_halts_and_flattens(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()
    store.insert_position(ACCOUNT, position("p1", size=100.0, entry=100.0))

    outcome = engine.run_tick(market(snap("EUR/USD", 95.01, bid=95.0, ask=95.02)))

    assert outcome.action == "risk_halt"
    assert outcome.halted
    assert outcome.session_status == SessionStatus.IDLE
    assert outcome.closed_count == 1
    assert store.count_positions(ACCOUNT) == 0

    (closed,) = store.list_trades(ACCOUNT)
    assert closed.reason == CloseReason.RISK_HALT
    assert closed.realized_pnl == pytest.approx(-500.0)

    session = store.load_session(ACCOUNT)
    assert session.halted
    assert session.halted_date == "2026-03-04"
    assert store.list_events(ACCOUNT)[-1]["source"] == "RISK"

    with pytest.raises(SessionTransitionError):
        engine.start()

    again = engine.run_tick(_hinted_market())
    assert again.action == "tick"
    assert again.opened_count == 0
    assert "trading halted for the day" in again.diagnostics

    engine.reset_day()
    assert engine.start().status == SessionStatus.RUNNING


def test_paused_data_still_exits_at_last_known_price(tmp_path) -> None:
    clock = FixedClock()
    engine, store = make_engine(tmp_path, clock=clock)
    engine.start()
    engine.pause()
    store.insert_position(ACCOUNT, position("p1", entry=100.0))

    first = engine.run_tick(market(snap("EUR/USD")))
    assert first.closed_count == 0
    assert "entries suppressed: session holding" in first.diagnostics

    clock.advance(130)
    second = engine.run_tick(market(source="feed", pause=True))
    assert second.success
    assert "market data unavailable (source=feed); entries suppressed" in second.diagnostics
    assert second.closed_count == 1

    (closed,) = store.list_trades(ACCOUNT)
    assert closed.reason == CloseReason.AGE_LIMIT
    assert closed.exit_price == pytest.approx(99.99)
    assert store.list_events(ACCOUNT)[-2]["message"] == "market data paused (source=feed)"


def test_holding_session_still_evaluates_exits(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()
    engine.pause()
    store.insert_position(ACCOUNT, position("p1", entry=101.5))

    outcome = engine.run_tick(_hinted_market())
    assert outcome.closed_count == 1
    assert outcome.opened_count == 0
    assert store.list_trades(ACCOUNT)[0].reason == CloseReason.STOP_HIT
    assert outcome.stats.win_rate == 0.0
    assert outcome.stats.trades_today == 1


def test_close_all_landing_mid_tick_blocks_entries(tmp_path, monkeypatch) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()
    real_load = store.load_session
    calls = []

    def racing_load(account_id):
        calls.append(account_id)
        if len(calls) == 2:
            store.set_request_flag(account_id, "close_all_requested")
        return real_load(account_id)

    monkeypatch.setattr(store, "load_session", racing_load)
    outcome = engine.run_tick(_hinted_market())

    assert outcome.opened_count == 0
    assert "entries suppressed: manual override pending" in outcome.diagnostics
    assert store.count_positions(ACCOUNT) == 0

    follow_up = engine.run_tick(_hinted_market())
    assert follow_up.action == "close_all"
    assert follow_up.session_status == SessionStatus.IDLE


def test_burst_locked_after_profit_target(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()
    store.insert_position(ACCOUNT, position("b1", strategy="burst"))
    store.close_positions(
        ACCOUNT,
        [
            Trade(
                position_id="b1",
                symbol="EUR/USD",
                strategy="burst",
                side=Side.LONG,
                size=1.0,
                entry_price=100.0,
                exit_price=900.0,
                realized_pnl=800.0,
                reason=CloseReason.TARGET_HIT,
                opened_at=NOW,
                closed_at=NOW,
                session_date="2026-03-04",
            )
        ],
    )

    outcome = engine.run_tick(_hinted_market(), burst_requested=True)
    assert outcome.effective_mode != "burst"
    assert "burst locked: daily profit target reached" in outcome.diagnostics
    assert all(p.batch_id is None for p in store.list_positions(ACCOUNT))


def test_unexpected_error_becomes_failed_outcome(tmp_path, monkeypatch) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()

    def broken(account_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(store, "load_settings", broken)
    outcome = engine.run_tick(_hinted_market())

    assert not outcome.success
    assert outcome.action == "tick"
    assert outcome.session_status == SessionStatus.RUNNING
    assert outcome.error == "boom"
    assert outcome.diagnostics == ["tick aborted: RuntimeError"]
    assert store.list_events(ACCOUNT)[-1]["source"] == "ENGINE"


def test_halt_persists_day_stats_for_next_day_start(tmp_path) -> None:
    clock = FixedClock()
    engine, store = make_engine(tmp_path, clock=clock)
    # idle tick writes a pre-halt ending equity for the day
    engine.run_tick(market(snap("EUR/USD")))
    assert store.get_daily_stats(ACCOUNT, "2026-03-04")["ending_equity"] == 10_000.0
    engine.start()
    store.insert_position(ACCOUNT, position("p1", size=100.0, entry=100.0))

    halt = engine.run_tick(market(snap("EUR/USD", 95.01, bid=95.0, ask=95.02)))
    assert halt.action == "risk_halt"
    assert halt.stats.equity == pytest.approx(9_500.0)

    day1 = store.get_daily_stats(ACCOUNT, "2026-03-04")
    assert day1["ending_equity"] == pytest.approx(9_500.0)
    assert day1["trade_count"] == 1
    assert day1["win_rate"] == 0.0

    clock.advance(24 * 60)
    engine.reset_day()
    nextday = engine.run_tick(market(snap("EUR/USD")))
    assert store.get_daily_stats(ACCOUNT, "2026-03-05")["starting_equity"] == pytest.approx(9_500.0)
    assert nextday.stats.equity == pytest.approx(9_500.0)


def test_stats_equity_includes_open_position_marks(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    store.insert_position(ACCOUNT, position("p1", size=10.0, entry=100.0))

    outcome = engine.run_tick(market(snap("EUR/USD", 102.01, bid=102.0, ask=102.02)))

    assert outcome.closed_count == 0
    assert outcome.stats.today_pnl == pytest.approx(20.0)
    assert outcome.stats.equity == pytest.approx(10_020.0)
    assert outcome.stats.realized_equity == pytest.approx(10_000.0)
    # the carried-forward figure stays closed-book so open P&L is not counted twice
    assert store.get_daily_stats(ACCOUNT, "2026-03-04")["ending_equity"] == pytest.approx(10_000.0)


def test_halt_flag_blocks_entries_even_when_status_forced_running(tmp_path) -> None:
    engine, store = make_engine(tmp_path)
    engine.start()
    store.insert_position(ACCOUNT, position("p1", size=100.0, entry=100.0))
    engine.run_tick(market(snap("EUR/USD", 95.01, bid=95.0, ask=95.02)))

    store.save_session(ACCOUNT, replace(store.load_session(ACCOUNT), status=SessionStatus.RUNNING))
    outcome = engine.run_tick(_hinted_market(), burst_requested=True)

    assert outcome.action == "tick"
    assert outcome.session_status == SessionStatus.RUNNING
    assert outcome.halted
    assert outcome.opened_count == 0
    assert "trading halted for the day" in outcome.diagnostics
    assert store.count_positions(ACCOUNT) == 0
