import random

import pytest

from paper_engine.config_types import ThermostatTag
from paper_engine.master_logic import DecisionContext, run_master_logic
from paper_engine.settings import BurstConfig, EngineSettings, ModeConfig, RiskConfig
from tests.helpers import NOW, position, regime, snap, trades_sequence

SYMBOLS = ("EUR/USD", "GBP/USD", "USD/JPY")


def _ctx(**overrides) -> DecisionContext:
    quotes = {s: snap(s) for s in SYMBOLS}
    values = dict(
        now=NOW,
        settings=EngineSettings(),
        positions=[],
        snapshots=quotes,
        entry_snapshots=quotes,
        regimes={s: regime(s) for s in SYMBOLS},
        recent_trades=[],
        today_pnl_percent=0.0,
        equity=10_000.0,
        session_quality=1.0,
        rng=random.Random(1),
        batch_id_factory=lambda now: "b-1",
    )
    values.update(overrides)
    return DecisionContext(**values)


def _settings(selected: str = "trend", **kwargs) -> EngineSettings:
    modes = ModeConfig(selected=selected, **kwargs.pop("modes", {}))
    return EngineSettings(modes=modes, **kwargs)


def test_burst_request_forces_burst_and_fills_cluster() -> None:
    held = position("p1", "EUR/USD", strategy="burst", entry=100.0)
    decision = run_master_logic(
        _ctx(
            settings=_settings(burst=BurstConfig(size=2)),
            positions=[held],
            burst_requested=True,
        )
    )
    assert decision.effective_mode == "burst"
    assert decision.exits == []
    assert len(decision.orders) == 1
    assert decision.orders[0].strategy == "burst"
    assert decision.orders[0].batch_id == "b-1"
    assert "burst cluster full (1/2)" in decision.diagnostics


def test_locked_burst_falls_back_to_selected_mode() -> None:
    decision = run_master_logic(_ctx(settings=_settings(), burst_requested=True, burst_locked=True))
    assert decision.effective_mode == "trend"
    assert "burst locked: daily profit target reached" in decision.diagnostics
    assert all(o.batch_id is None for o in decision.orders)


def test_disabled_burst_request_is_ignored() -> None:
    settings = _settings(modes={"enabled": ("scalper", "trend")})
    decision = run_master_logic(_ctx(settings=settings, burst_requested=True))
    assert decision.effective_mode == "trend"
    assert "burst requested but burst mode is disabled" in decision.diagnostics


def test_disabled_selected_mode_still_evaluates_exits() -> None:
    losing = position("p1", "EUR/USD", strategy="trend", entry=101.5)
    settings = _settings(modes={"enabled": ("burst",)})
    calls = []
    decision = run_master_logic(
        _ctx(settings=settings, positions=[losing]),
        entry_gate=lambda: calls.append(1),
    )
    assert decision.effective_mode is None
    assert [d.position.id for d in decision.exits] == ["p1"]
    assert decision.orders == []
    assert calls == []
    assert "mode trend is disabled" in decision.diagnostics


def test_adaptive_resolves_to_concrete_sub_mode() -> None:
    decision = run_master_logic(_ctx(settings=_settings("adaptive")))
    assert decision.adaptive is not None
    assert decision.effective_mode == "trend"
    assert decision.adaptive.confidence == pytest.approx(0.7)
    assert [o.strategy for o in decision.orders] == ["trend"]


def test_adaptive_skips_locked_burst() -> None:
    settings = _settings("adaptive", modes={"enabled": ("adaptive", "burst", "scalper")})
    decision = run_master_logic(_ctx(settings=settings, burst_locked=True))
    assert decision.effective_mode == "scalper"
    assert set(decision.adaptive.scores) == {"scalper"}


def test_entry_gate_blocks_new_orders_only() -> None:
    losing = position("p1", "EUR/USD", strategy="trend", entry=101.5)
    decision = run_master_logic(
        _ctx(settings=_settings(), positions=[losing]),
        entry_gate=lambda: "manual override pending",
    )
    assert len(decision.exits) == 1
    assert decision.orders == []
    assert decision.candidates == []
    assert "entries suppressed: manual override pending" in decision.diagnostics


def test_closing_positions_free_slots() -> None:
    losing = position("p1", "GBP/USD", strategy="trend", entry=101.5)
    settings = _settings(risk=RiskConfig(max_open_trades=1))
    decision = run_master_logic(
        _ctx(
            settings=settings,
            positions=[losing],
            entry_snapshots={"EUR/USD": snap("EUR/USD")},
        )
    )
    assert [d.position.id for d in decision.exits] == ["p1"]
    assert [o.symbol for o in decision.orders] == ["EUR/USD"]


def test_full_book_yields_no_orders() -> None:
    held = [position(f"p{i}", "AUD/USD", strategy="trend") for i in range(2)]
    settings = _settings(risk=RiskConfig(max_open_trades=2))
    decision = run_master_logic(_ctx(settings=settings, positions=held))
    assert decision.exits == []
    assert decision.candidates
    assert decision.orders == []


def test_thermostat_danger_raises_entry_bar() -> None:
    weak = {s: regime(s, trend_strength=0.0, confidence=0.4) for s in SYMBOLS}
    calm = run_master_logic(_ctx(settings=_settings(), regimes=weak))
    assert calm.thermostat.tag == ThermostatTag.NORMAL
    assert len(calm.orders) == 1

    losers = trades_sequence([-1.0] * 4, strategy="trend")
    decision = run_master_logic(_ctx(settings=_settings(), regimes=weak, recent_trades=losers))
    assert decision.thermostat.tag == ThermostatTag.DANGER
    assert decision.candidates
    assert decision.orders == []
