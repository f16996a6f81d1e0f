from dataclasses import dataclass, field
import os
from typing import Optional


def _parse_env_bool(value: str) -> Optional[bool]:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _default_symbols() -> list[str]:
    return [
        "EUR/USD",
        "GBP/USD",
        "USD/JPY",
        "AUD/USD",
        "USD/CAD",
        "XAU/USD",
        "BTC/USD",
        "ETH/USD",
    ]


@dataclass
class CFG:
    # Account
    STARTING_EQUITY: float = 10_000.0
    DEFAULT_ACCOUNT: str = "paper"

    # Risk limits
    MAX_DAILY_LOSS_PCT: float = 5.0
    MAX_OPEN_TRADES: int = 20
    MAX_PER_SYMBOL_POSITIONS: int = 5

    # Burst cluster
    BURST_SIZE: int = 10
    BURST_DAILY_PROFIT_TARGET_PCT: float = 8.0

    # Mode selection
    DEFAULT_MODE: str = "adaptive"
    ENABLED_MODES: list[str] = field(
        default_factory=lambda: ["burst", "scalper", "trend", "adaptive"]
    )

    # Universe
    SYMBOLS: list[str] = field(default_factory=_default_symbols)

    # Regime classifier
    PRICE_HISTORY_LEN: int = 60
    REGIME_SHORT_WINDOW: int = 5
    REGIME_LONG_WINDOW: int = 20
    REGIME_MIN_SAMPLES: int = 5

    # Thermostat windows
    STREAK_LOOKBACK: int = 5
    WIN_RATE_WINDOW: int = 20
    RECENT_TRADES_LIMIT: int = 50

    # Data health
    DATA_FAILURE_THRESHOLD: int = 3

    # Controls
    LIVE_TRADING: bool = False

    # Persistence
    STATE_DB_PATH: str = "data/paper_engine.sqlite"

    def __post_init__(self) -> None:
        db_path = os.getenv("PAPER_ENGINE_DB")
        if db_path:
            self.STATE_DB_PATH = db_path.strip()
        mode = os.getenv("PAPER_ENGINE_MODE")
        if mode:
            self.DEFAULT_MODE = mode.strip().lower()
        live = os.getenv("PAPER_ENGINE_LIVE")
        if live is not None:
            parsed = _parse_env_bool(live)
            if parsed is not None:
                self.LIVE_TRADING = parsed
        symbols = os.getenv("PAPER_ENGINE_SYMBOLS")
        if symbols:
            self.SYMBOLS = [s.strip().upper() for s in symbols.split(",") if s.strip()]


cfg = CFG()
