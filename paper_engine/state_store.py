"""
Paper Engine – SQLite State Store

Goals:
- Single-writer, restart-safe persistence for accounts, sessions, positions,
  trades, daily stats and the engine event log.
- Multi-row changes (manual closes, risk halt) commit in one transaction or
  not at all.

sqlite3 errors surface as StoreError.
"""

from __future__ import annotations

import json
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional, Sequence

from config import cfg
from paper_engine.config_types import (
    CloseReason,
    Position,
    SessionState,
    SessionStatus,
    Side,
    Trade,
)
from paper_engine.errors import StoreError
from paper_engine.settings import EngineSettings


SCHEMA_VERSION = 1

_REQUEST_FLAGS = frozenset(
    {
        "take_profit_requested",
        "close_all_requested",
        "take_burst_profit_requested",
        "burst_requested",
    }
)


def default_db_path() -> str:
    return cfg.STATE_DB_PATH


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir and db_path != ":memory:":
            os.makedirs(db_dir, exist_ok=True)
        try:
            self.conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open {db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row
        self._in_tx = False
        with self._errors():
            self._pragma()
            self._migrate()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        BEGIN IMMEDIATE ... COMMIT; any exception rolls back and re-raises
        (sqlite3 errors as StoreError). Nested use joins the outer transaction.
        """
        cur = self.conn.cursor()
        if self._in_tx:
            yield cur
            return
        with self._errors():
            cur.execute("BEGIN IMMEDIATE;")
        self._in_tx = True
        try:
            yield cur
        except sqlite3.Error as exc:
            self._in_tx = False
            self.conn.rollback()
            raise StoreError(str(exc)) from exc
        except BaseException:
            self._in_tx = False
            self.conn.rollback()
            raise
        self._in_tx = False
        with self._errors():
            cur.execute("COMMIT;")

    def _pragma(self) -> None:
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.execute("PRAGMA foreign_keys=ON;")

    def _migrate(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);"
        )
        cur.execute("SELECT value FROM meta WHERE key='schema_version';")
        row = cur.fetchone()

        if row is None:
            cur.execute(
                "INSERT INTO meta(key,value) VALUES('schema_version', ?);",
                (str(SCHEMA_VERSION),),
            )
            self._create_schema_v1()
        elif int(row["value"]) != SCHEMA_VERSION:
            raise RuntimeError(
                f"Unsupported schema_version {row['value']}; expected {SCHEMA_VERSION}"
            )

    def _create_schema_v1(self) -> None:
        cur = self.conn.cursor()

        # Accounts: starting equity + settings JSON (risk, burst, modes)
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
              account_id TEXT PRIMARY KEY,
              starting_equity REAL NOT NULL,
              settings_json TEXT NOT NULL,
              created_ts REAL NOT NULL
            );
            """
        )

        # Session: status, daily halt, pending manual requests
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS session_state (
              account_id TEXT PRIMARY KEY,
              status TEXT NOT NULL,
              halted INTEGER NOT NULL,
              halted_date TEXT,
              take_profit_requested INTEGER NOT NULL,
              close_all_requested INTEGER NOT NULL,
              take_burst_profit_requested INTEGER NOT NULL,
              burst_requested INTEGER NOT NULL,
              updated_ts REAL NOT NULL
            );
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS positions (
              id TEXT PRIMARY KEY,
              account_id TEXT NOT NULL,
              symbol TEXT NOT NULL,
              strategy TEXT NOT NULL,
              side TEXT NOT NULL,
              size REAL NOT NULL,
              entry_price REAL NOT NULL,
              opened_at TEXT NOT NULL,
              stop REAL,
              target REAL,
              unrealized_pnl REAL NOT NULL,
              peak_pnl_percent REAL NOT NULL,
              batch_id TEXT,
              updated_ts REAL NOT NULL
            );
            """
        )

        # Trades: append-only close records
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id TEXT NOT NULL,
              position_id TEXT NOT NULL,
              symbol TEXT NOT NULL,
              strategy TEXT NOT NULL,
              side TEXT NOT NULL,
              size REAL NOT NULL,
              entry_price REAL NOT NULL,
              exit_price REAL NOT NULL,
              realized_pnl REAL NOT NULL,
              reason TEXT NOT NULL,
              opened_at TEXT NOT NULL,
              closed_at TEXT NOT NULL,
              session_date TEXT NOT NULL,
              batch_id TEXT
            );
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS daily_stats (
              account_id TEXT NOT NULL,
              trade_date TEXT NOT NULL,
              starting_equity REAL NOT NULL,
              ending_equity REAL,
              win_rate REAL,
              trade_count INTEGER NOT NULL DEFAULT 0,
              updated_ts REAL NOT NULL,
              PRIMARY KEY (account_id, trade_date)
            );
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS engine_events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id TEXT NOT NULL,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              source TEXT NOT NULL,
              message TEXT NOT NULL,
              meta_json TEXT
            );
            """
        )

        # Helpful indexes
        cur.execute("CREATE INDEX IF NOT EXISTS idx_positions_account ON positions(account_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_trades_account_date ON trades(account_id, session_date);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_account ON engine_events(account_id, id);")

    # -------------------------
    # Accounts + settings
    # -------------------------

    def ensure_account(self, account_id: str, settings: Optional[EngineSettings] = None) -> None:
        settings = settings or EngineSettings()
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT OR IGNORE INTO accounts(account_id, starting_equity, settings_json, created_ts)
                VALUES(?,?,?,?);
                """,
                (account_id, settings.starting_equity, json.dumps(settings.to_dict(), sort_keys=True), time.time()),
            )
            cur.execute(
                """
                INSERT OR IGNORE INTO session_state(
                  account_id,status,halted,halted_date,take_profit_requested,close_all_requested,
                  take_burst_profit_requested,burst_requested,updated_ts
                )
                VALUES(?,?,0,NULL,0,0,0,0,?);
                """,
                (account_id, SessionStatus.IDLE.value, time.time()),
            )

    def load_settings(self, account_id: str) -> EngineSettings:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute("SELECT settings_json FROM accounts WHERE account_id=?;", (account_id,))
            r = cur.fetchone()
        if r is None:
            raise StoreError(f"unknown account {account_id!r}")
        return EngineSettings.from_dict(json.loads(r["settings_json"]))

    def save_settings(self, account_id: str, settings: EngineSettings) -> None:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                "UPDATE accounts SET settings_json=?, starting_equity=? WHERE account_id=?;",
                (json.dumps(settings.to_dict(), sort_keys=True), settings.starting_equity, account_id),
            )
            if cur.rowcount == 0:
                raise StoreError(f"unknown account {account_id!r}")

    # -------------------------
    # Session
    # -------------------------

    def load_session(self, account_id: str) -> SessionState:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM session_state WHERE account_id=?;", (account_id,))
            r = cur.fetchone()
        if r is None:
            raise StoreError(f"no session for account {account_id!r}")
        return SessionState(
            status=SessionStatus(r["status"]),
            halted=bool(int(r["halted"])),
            halted_date=r["halted_date"],
            take_profit_requested=bool(int(r["take_profit_requested"])),
            close_all_requested=bool(int(r["close_all_requested"])),
            take_burst_profit_requested=bool(int(r["take_burst_profit_requested"])),
            burst_requested=bool(int(r["burst_requested"])),
        )

    def _write_session(self, cur: sqlite3.Cursor, account_id: str, state: SessionState) -> None:
        cur.execute(
            """
            UPDATE session_state SET
              status=?, halted=?, halted_date=?, take_profit_requested=?, close_all_requested=?,
              take_burst_profit_requested=?, burst_requested=?, updated_ts=?
            WHERE account_id=?;
            """,
            (
                state.status.value,
                1 if state.halted else 0,
                state.halted_date,
                1 if state.take_profit_requested else 0,
                1 if state.close_all_requested else 0,
                1 if state.take_burst_profit_requested else 0,
                1 if state.burst_requested else 0,
                time.time(),
                account_id,
            ),
        )
        if cur.rowcount == 0:
            raise StoreError(f"no session for account {account_id!r}")

    def save_session(self, account_id: str, state: SessionState) -> None:
        with self._errors():
            self._write_session(self.conn.cursor(), account_id, state)

    def set_request_flag(self, account_id: str, flag: str, value: bool = True) -> None:
        if flag not in _REQUEST_FLAGS:
            raise ValueError(f"unknown request flag {flag!r}")
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                f"UPDATE session_state SET {flag}=?, updated_ts=? WHERE account_id=?;",
                (1 if value else 0, time.time(), account_id),
            )
            if cur.rowcount == 0:
                raise StoreError(f"no session for account {account_id!r}")

    # -------------------------
    # Positions
    # -------------------------

    def insert_position(self, account_id: str, p: Position) -> None:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT INTO positions(
                  id,account_id,symbol,strategy,side,size,entry_price,opened_at,stop,target,
                  unrealized_pnl,peak_pnl_percent,batch_id,updated_ts
                )
                VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?);
                """,
                (
                    p.id,
                    account_id,
                    p.symbol,
                    p.strategy,
                    p.side.value,
                    float(p.size),
                    float(p.entry_price),
                    p.opened_at.isoformat(),
                    p.stop,
                    p.target,
                    float(p.unrealized_pnl),
                    float(p.peak_pnl_percent),
                    p.batch_id,
                    time.time(),
                ),
            )

    @staticmethod
    def _row_to_position(r: sqlite3.Row) -> Position:
        return Position(
            id=r["id"],
            symbol=r["symbol"],
            strategy=r["strategy"],
            side=Side(r["side"]),
            size=float(r["size"]),
            entry_price=float(r["entry_price"]),
            opened_at=datetime.fromisoformat(r["opened_at"]),
            stop=(float(r["stop"]) if r["stop"] is not None else None),
            target=(float(r["target"]) if r["target"] is not None else None),
            unrealized_pnl=float(r["unrealized_pnl"]),
            peak_pnl_percent=float(r["peak_pnl_percent"]),
            batch_id=r["batch_id"],
        )

    def list_positions(self, account_id: str) -> list[Position]:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                "SELECT * FROM positions WHERE account_id=? ORDER BY opened_at, id;",
                (account_id,),
            )
            rows = cur.fetchall()
        return [self._row_to_position(r) for r in rows]

    def count_positions(self, account_id: str) -> int:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute("SELECT COUNT(*) AS n FROM positions WHERE account_id=?;", (account_id,))
            return int(cur.fetchone()["n"])

    def update_marks(self, account_id: str, marks: Iterable[tuple[str, float, float]]) -> None:
        """marks: (position_id, unrealized_pnl, peak_pnl_percent)."""
        rows = [(float(u), float(pk), time.time(), pid, account_id) for pid, u, pk in marks]
        if not rows:
            return
        with self.transaction() as cur:
            cur.executemany(
                """
                UPDATE positions SET unrealized_pnl=?, peak_pnl_percent=?, updated_ts=?
                WHERE id=? AND account_id=?;
                """,
                rows,
            )

    # -------------------------
    # Trades + closes
    # -------------------------

    def _insert_trade(self, cur: sqlite3.Cursor, account_id: str, t: Trade) -> None:
        cur.execute(
            """
            INSERT INTO trades(
              account_id,position_id,symbol,strategy,side,size,entry_price,exit_price,realized_pnl,
              reason,opened_at,closed_at,session_date,batch_id
            )
            VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?);
            """,
            (
                account_id,
                t.position_id,
                t.symbol,
                t.strategy,
                t.side.value,
                float(t.size),
                float(t.entry_price),
                float(t.exit_price),
                float(t.realized_pnl),
                t.reason.value,
                t.opened_at.isoformat(),
                t.closed_at.isoformat(),
                t.session_date,
                t.batch_id,
            ),
        )

    def close_positions(
        self,
        account_id: str,
        trades: Sequence[Trade],
        *,
        session: Optional[SessionState] = None,
        event: Optional[tuple[str, str, str]] = None,
        daily_stats: Optional[tuple[str, float, float, int]] = None,
    ) -> None:
        """
        Record trades and delete their positions in one transaction, optionally
        writing the session row, an event (level, source, message) and the day's
        stats (trade_date, ending_equity, win_rate, trade_count).

        A position that is already gone aborts the whole close.
        """
        with self.transaction() as cur:
            for t in trades:
                cur.execute(
                    "DELETE FROM positions WHERE id=? AND account_id=?;",
                    (t.position_id, account_id),
                )
                if cur.rowcount != 1:
                    raise StoreError(f"position {t.position_id} is not open")
                self._insert_trade(cur, account_id, t)
            if session is not None:
                self._write_session(cur, account_id, session)
            if event is not None:
                level, source, message = event
                self._insert_event(cur, account_id, level, source, message, None, None)
            if daily_stats is not None:
                trade_date, ending_equity, win_rate, trade_count = daily_stats
                self._write_daily_stats(cur, account_id, trade_date, ending_equity, win_rate, trade_count)

    @staticmethod
    def _row_to_trade(r: sqlite3.Row) -> Trade:
        return Trade(
            position_id=r["position_id"],
            symbol=r["symbol"],
            strategy=r["strategy"],
            side=Side(r["side"]),
            size=float(r["size"]),
            entry_price=float(r["entry_price"]),
            exit_price=float(r["exit_price"]),
            realized_pnl=float(r["realized_pnl"]),
            reason=CloseReason(r["reason"]),
            opened_at=datetime.fromisoformat(r["opened_at"]),
            closed_at=datetime.fromisoformat(r["closed_at"]),
            session_date=r["session_date"],
            batch_id=r["batch_id"],
        )

    def list_trades(self, account_id: str, session_date: Optional[str] = None) -> list[Trade]:
        with self._errors():
            cur = self.conn.cursor()
            if session_date is None:
                cur.execute(
                    "SELECT * FROM trades WHERE account_id=? ORDER BY id;",
                    (account_id,),
                )
            else:
                cur.execute(
                    "SELECT * FROM trades WHERE account_id=? AND session_date=? ORDER BY id;",
                    (account_id, session_date),
                )
            rows = cur.fetchall()
        return [self._row_to_trade(r) for r in rows]

    def recent_trades(self, account_id: str, limit: int = 50) -> list[Trade]:
        """Most recent `limit` trades, oldest -> newest."""
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                "SELECT * FROM trades WHERE account_id=? ORDER BY id DESC LIMIT ?;",
                (account_id, int(limit)),
            )
            rows = cur.fetchall()
        return [self._row_to_trade(r) for r in reversed(rows)]

    # -------------------------
    # Daily stats
    # -------------------------

    def ensure_daily_stats(self, account_id: str, trade_date: str) -> float:
        """
        Return the day's starting equity, creating the row on first use from the
        latest prior ending equity (or the account's starting equity).

        ending_equity is closed-book equity (start + realized). Open positions
        carry their full unrealized P&L into the next day, so counting it here
        too would double it.
        """
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                "SELECT starting_equity FROM daily_stats WHERE account_id=? AND trade_date=?;",
                (account_id, trade_date),
            )
            r = cur.fetchone()
            if r is not None:
                return float(r["starting_equity"])

            cur.execute(
                """
                SELECT ending_equity FROM daily_stats
                WHERE account_id=? AND trade_date<? AND ending_equity IS NOT NULL
                ORDER BY trade_date DESC LIMIT 1;
                """,
                (account_id, trade_date),
            )
            prior = cur.fetchone()
            if prior is not None:
                start = float(prior["ending_equity"])
            else:
                cur.execute("SELECT starting_equity FROM accounts WHERE account_id=?;", (account_id,))
                acct = cur.fetchone()
                if acct is None:
                    raise StoreError(f"unknown account {account_id!r}")
                start = float(acct["starting_equity"])

            cur.execute(
                """
                INSERT OR IGNORE INTO daily_stats(account_id, trade_date, starting_equity, trade_count, updated_ts)
                VALUES(?,?,?,0,?);
                """,
                (account_id, trade_date, start, time.time()),
            )
            return start

    def update_daily_stats(
        self,
        account_id: str,
        trade_date: str,
        *,
        ending_equity: float,
        win_rate: float,
        trade_count: int,
    ) -> None:
        with self._errors():
            self._write_daily_stats(self.conn.cursor(), account_id, trade_date, ending_equity, win_rate, trade_count)

    def _write_daily_stats(
        self,
        cur: sqlite3.Cursor,
        account_id: str,
        trade_date: str,
        ending_equity: float,
        win_rate: float,
        trade_count: int,
    ) -> None:
        cur.execute(
            """
            UPDATE daily_stats SET ending_equity=?, win_rate=?, trade_count=?, updated_ts=?
            WHERE account_id=? AND trade_date=?;
            """,
            (float(ending_equity), float(win_rate), int(trade_count), time.time(), account_id, trade_date),
        )

    def get_daily_stats(self, account_id: str, trade_date: str) -> Optional[dict[str, Any]]:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                "SELECT * FROM daily_stats WHERE account_id=? AND trade_date=?;",
                (account_id, trade_date),
            )
            r = cur.fetchone()
        return dict(r) if r is not None else None

    # -------------------------
    # Engine event log
    # -------------------------

    def _insert_event(
        self,
        cur: sqlite3.Cursor,
        account_id: str,
        level: str,
        source: str,
        message: str,
        meta: Optional[dict[str, Any]],
        ts: Optional[datetime],
    ) -> None:
        cur.execute(
            "INSERT INTO engine_events(account_id, ts, level, source, message, meta_json) VALUES(?,?,?,?,?,?);",
            (
                account_id,
                (ts.isoformat() if ts is not None else datetime.now().astimezone().isoformat()),
                level,
                source,
                message,
                json.dumps(meta, sort_keys=True) if meta else None,
            ),
        )

    def log_event(
        self,
        account_id: str,
        level: str,
        source: str,
        message: str,
        meta: Optional[dict[str, Any]] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        with self._errors():
            self._insert_event(self.conn.cursor(), account_id, level, source, message, meta, ts)

    def list_events(self, account_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._errors():
            cur = self.conn.cursor()
            cur.execute(
                "SELECT * FROM engine_events WHERE account_id=? ORDER BY id DESC LIMIT ?;",
                (account_id, int(limit)),
            )
            rows = cur.fetchall()
        return [dict(r) for r in reversed(rows)]
