"""
Paper Engine – Account Settings

Per-account configuration: risk limits, burst cluster, mode selection.

Defaults come from the root config (cfg); from_env() applies PAPER_ENGINE_*
overrides; to_dict()/from_dict() round-trip the JSON stored per account.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

from config import cfg
from paper_engine.mode_profiles import CONCRETE_MODES, apply_overrides, get_mode_profile


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class RiskConfig:
    max_daily_loss_pct: float = cfg.MAX_DAILY_LOSS_PCT
    max_open_trades: int = cfg.MAX_OPEN_TRADES
    max_per_symbol: int = cfg.MAX_PER_SYMBOL_POSITIONS

    def __post_init__(self) -> None:
        if self.max_daily_loss_pct <= 0:
            raise ValueError("max_daily_loss_pct must be positive")
        if self.max_open_trades < 0 or self.max_per_symbol < 0:
            raise ValueError("trade limits must be non-negative")

    @classmethod
    def from_env(cls) -> "RiskConfig":
        return cls(
            max_daily_loss_pct=_env_float("PAPER_ENGINE_MAX_DAILY_LOSS_PCT", cls.max_daily_loss_pct),
            max_open_trades=_env_int("PAPER_ENGINE_MAX_OPEN_TRADES", cls.max_open_trades),
            max_per_symbol=_env_int("PAPER_ENGINE_MAX_PER_SYMBOL", cls.max_per_symbol),
        )


@dataclass(frozen=True)
class BurstConfig:
    size: int = cfg.BURST_SIZE
    daily_profit_target_pct: float = cfg.BURST_DAILY_PROFIT_TARGET_PCT

    @classmethod
    def from_env(cls) -> "BurstConfig":
        return cls(
            size=_env_int("PAPER_ENGINE_BURST_SIZE", cls.size),
            daily_profit_target_pct=_env_float(
                "PAPER_ENGINE_BURST_PROFIT_TARGET_PCT", cls.daily_profit_target_pct
            ),
        )


@dataclass(frozen=True)
class ModeConfig:
    selected: str = cfg.DEFAULT_MODE
    enabled: tuple[str, ...] = tuple(cfg.ENABLED_MODES)
    overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        get_mode_profile(self.selected)
        for key in self.enabled:
            get_mode_profile(key)
        for key, values in self.overrides.items():
            apply_overrides(get_mode_profile(key), values)

    def is_enabled(self, key: str) -> bool:
        return key in self.enabled

    def enabled_concrete(self) -> tuple[str, ...]:
        return tuple(m for m in CONCRETE_MODES if m in self.enabled)

    @classmethod
    def from_env(cls) -> "ModeConfig":
        selected = os.getenv("PAPER_ENGINE_MODE", cls.selected).strip().lower()
        raw_enabled = os.getenv("PAPER_ENGINE_ENABLED_MODES", "")
        enabled = tuple(m.strip().lower() for m in raw_enabled.split(",") if m.strip())
        return cls(selected=selected, enabled=enabled or cls.enabled)


@dataclass(frozen=True)
class EngineSettings:
    risk: RiskConfig = field(default_factory=RiskConfig)
    burst: BurstConfig = field(default_factory=BurstConfig)
    modes: ModeConfig = field(default_factory=ModeConfig)
    starting_equity: float = cfg.STARTING_EQUITY

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            risk=RiskConfig.from_env(),
            burst=BurstConfig.from_env(),
            modes=ModeConfig.from_env(),
            starting_equity=_env_float("PAPER_ENGINE_STARTING_EQUITY", cfg.STARTING_EQUITY),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk": asdict(self.risk),
            "burst": asdict(self.burst),
            "modes": {
                "selected": self.modes.selected,
                "enabled": list(self.modes.enabled),
                "overrides": {k: dict(v) for k, v in self.modes.overrides.items()},
            },
            "starting_equity": self.starting_equity,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "EngineSettings":
        if not data:
            return cls()
        modes = data.get("modes") or {}
        return cls(
            risk=RiskConfig(**(data.get("risk") or {})),
            burst=BurstConfig(**(data.get("burst") or {})),
            modes=ModeConfig(
                selected=str(modes.get("selected", ModeConfig.selected)),
                enabled=tuple(modes.get("enabled", ModeConfig.enabled)),
                overrides=dict(modes.get("overrides") or {}),
            ),
            starting_equity=float(data.get("starting_equity", cfg.STARTING_EQUITY)),
        )
