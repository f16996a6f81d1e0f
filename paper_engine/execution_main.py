"""
Paper Engine – Command-line entrypoint

Examples:
  python -m paper_engine.execution_main start
  python -m paper_engine.execution_main tick --snapshots snapshots.json
  python -m paper_engine.execution_main close-all
  python -m paper_engine.execution_main stats
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import random
import sys
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence

from config import cfg
from paper_engine.clocks import trading_day, utc_now
from paper_engine.config_types import TickOutcome
from paper_engine.engine import PaperTradingEngine
from paper_engine.errors import EngineError, SessionTransitionError
from paper_engine.market_data import MarketData
from paper_engine.settings import EngineSettings
from paper_engine.state_store import StateStore, default_db_path

logger = logging.getLogger(__name__)

SESSION_COMMANDS = ("start", "pause", "resume", "stop", "reset")


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def _emit(payload: Any) -> None:
    print(json.dumps(payload, default=_json_default, sort_keys=True, indent=2), flush=True)


def outcome_to_dict(outcome: TickOutcome) -> dict[str, Any]:
    return asdict(outcome)


def _load_market(path: Optional[str]) -> MarketData:
    if not path:
        return MarketData(source="none", pause_trading=True)
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return MarketData.from_payload(payload)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Paper Engine - Paper Trading Decision Engine")
    parser.add_argument("--db-path", default=os.getenv("PAPER_ENGINE_DB", default_db_path()))
    parser.add_argument("--account", default=os.getenv("PAPER_ENGINE_ACCOUNT", cfg.DEFAULT_ACCOUNT))
    parser.add_argument("--seed", type=int, default=None, help="Seed for the fallback-direction rng")
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)
    for name in SESSION_COMMANDS:
        sub.add_parser(name, help=f"session {name}")
    take_profit = sub.add_parser("take-profit", help="close every open position at market")
    take_profit.add_argument("--snapshots", help="JSON file used to price the closes")
    close_all = sub.add_parser("close-all", help="close every open position and idle the session")
    close_all.add_argument("--snapshots", help="JSON file used to price the closes")
    sub.add_parser("stats", help="print today's stats and session state")

    tick = sub.add_parser("tick", help="run one engine tick")
    tick.add_argument("--snapshots", help="JSON file with source, pause_trading, snapshots[]")
    tick.add_argument("--burst", dest="burst", action="store_true", default=None)
    tick.add_argument("--no-burst", dest="burst", action="store_false")

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    store = StateStore(args.db_path)
    engine = PaperTradingEngine(
        store,
        args.account,
        settings=EngineSettings.from_env(),
        rng=random.Random(args.seed),
        symbols=cfg.SYMBOLS if os.getenv("PAPER_ENGINE_SYMBOLS") else None,
    )

    try:
        if args.command in SESSION_COMMANDS:
            action = "reset_day" if args.command == "reset" else args.command
            state = getattr(engine, action)()
            _emit({"account": args.account, "session": asdict(state)})
            return 0

        if args.command == "take-profit":
            outcome = engine.run_tick(_load_market(args.snapshots), take_profit=True)
        elif args.command == "close-all":
            outcome = engine.run_tick(_load_market(args.snapshots), close_all=True)
        elif args.command == "tick":
            outcome = engine.run_tick(_load_market(args.snapshots), burst_requested=args.burst)
        else:
            today = trading_day(utc_now())
            _emit(
                {
                    "account": args.account,
                    "session": asdict(store.load_session(args.account)),
                    "daily_stats": store.get_daily_stats(args.account, today),
                    "open_positions": store.count_positions(args.account),
                    "events": store.list_events(args.account, limit=10),
                }
            )
            return 0
    except SessionTransitionError as exc:
        logger.error("session command rejected: %s", exc)
        return 2
    except EngineError as exc:
        logger.error("engine error: %s", exc)
        return 1
    finally:
        store.close()

    _emit(outcome_to_dict(outcome))
    return 0 if outcome.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
