import pytest

from paper_engine.settings import BurstConfig, EngineSettings, ModeConfig, RiskConfig


def test_defaults_follow_root_config() -> None:
    settings = EngineSettings()
    assert settings.risk.max_daily_loss_pct == 5
    assert settings.risk.max_open_trades == 20
    assert settings.burst.size == 10
    assert settings.modes.selected == "adaptive"
    assert settings.modes.enabled_concrete() == ("burst", "scalper", "trend")
    assert settings.starting_equity == 10_000


def test_from_env(monkeypatch) -> None:
    monkeypatch.setenv("PAPER_ENGINE_MAX_DAILY_LOSS_PCT", "2.5")
    monkeypatch.setenv("PAPER_ENGINE_BURST_SIZE", "4")
    monkeypatch.setenv("PAPER_ENGINE_MODE", " Scalper ")
    monkeypatch.setenv("PAPER_ENGINE_ENABLED_MODES", "scalper, trend")
    monkeypatch.setenv("PAPER_ENGINE_STARTING_EQUITY", "2500")

    settings = EngineSettings.from_env()
    assert settings.risk.max_daily_loss_pct == 2.5
    assert settings.burst.size == 4
    assert settings.modes.selected == "scalper"
    assert settings.modes.enabled == ("scalper", "trend")
    assert not settings.modes.is_enabled("burst")
    assert settings.starting_equity == 2500.0


def test_blank_env_values_use_defaults(monkeypatch) -> None:
    monkeypatch.setenv("PAPER_ENGINE_MAX_OPEN_TRADES", " ")
    assert RiskConfig.from_env().max_open_trades == 20


@pytest.mark.parametrize(
    "factory",
    [
        lambda: RiskConfig(max_daily_loss_pct=0),
        lambda: RiskConfig(max_open_trades=-1),
        lambda: ModeConfig(selected="martingale"),
        lambda: ModeConfig(enabled=("trend", "grid")),
        lambda: ModeConfig(overrides={"trend": {"leverage": 10}}),
    ],
)
def test_invalid_settings_raise(factory) -> None:
    with pytest.raises(ValueError):
        factory()


def test_dict_round_trip() -> None:
    settings = EngineSettings(
        risk=RiskConfig(max_daily_loss_pct=3.0, max_open_trades=6, max_per_symbol=2),
        burst=BurstConfig(size=5, daily_profit_target_pct=4.0),
        modes=ModeConfig(selected="trend", enabled=("trend",), overrides={"trend": {"stop_percent": 0.8}}),
        starting_equity=25_000.0,
    )
    assert EngineSettings.from_dict(settings.to_dict()) == settings
    assert EngineSettings.from_dict(None) == EngineSettings()
