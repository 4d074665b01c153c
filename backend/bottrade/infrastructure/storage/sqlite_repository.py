"""SQLite repository for users' balances, bot trades and the event journal.

Money is stored as TEXT and read back as Decimal. Multi-step writes go through
``transaction()`` (BEGIN IMMEDIATE), which also serializes writers across
processes sharing the same database file.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager, suppress
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from bottrade.infrastructure.utils.timeutils import ensure_utc, parse_utc, utc_now
from bottrade.models.errors import PersistenceFailure
from bottrade.models.trade_models import BotToken, BotTrade, TokenStatus, TradeOutcome, TradeStatus, UserBalances


JsonDict = Dict[str, Any]


def _ts(value: datetime) -> str:
    # fixed width so timestamps compare correctly as strings
    return ensure_utc(value).isoformat(timespec="microseconds")


@contextmanager
def _wrap_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise PersistenceFailure(operation, e) from e


class SQLiteRepository:
    def __init__(self, db_path: Path) -> None:
        self._path = db_path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly in transaction()
        self._conn = sqlite3.connect(
            self._path.as_posix(),
            check_same_thread=False,
            isolation_level=None,
            timeout=10.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  type TEXT NOT NULL,
                  message TEXT NOT NULL,
                  data_json TEXT
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                  owner_id TEXT PRIMARY KEY,
                  main_balance TEXT NOT NULL,
                  bot_balance TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS bot_trades (
                  id TEXT PRIMARY KEY,
                  owner_id TEXT NOT NULL,
                  invest_amount TEXT NOT NULL,
                  coins_json TEXT NOT NULL,
                  timer_hours INTEGER NOT NULL,
                  open_time TEXT NOT NULL,
                  status TEXT NOT NULL,
                  profit_or_lose TEXT NOT NULL,
                  profit_percent TEXT NOT NULL,
                  return_amount TEXT NOT NULL,
                  profit TEXT NOT NULL,
                  close_time TEXT
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS bot_tokens (
                  symbol TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  image_url TEXT,
                  status TEXT NOT NULL
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_bot_trades_owner_status ON bot_trades(owner_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_bot_trades_owner_open ON bot_trades(owner_id, open_time)")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block atomically. Nested calls join the outer transaction."""
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                with _wrap_errors("begin"):
                    self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    with _wrap_errors("rollback"):
                        self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    try:
                        with _wrap_errors("commit"):
                            self._conn.execute("COMMIT")
                    except PersistenceFailure:
                        with suppress(sqlite3.Error):
                            self._conn.execute("ROLLBACK")
                        raise

    # --------- events ---------
    def log_event(
        self,
        *,
        ts: str,
        level: str,
        type: str,
        message: str,
        data: Optional[JsonDict] = None,
    ) -> None:
        with self._lock, _wrap_errors("log_event"):
            self._conn.execute(
                "INSERT INTO events(ts, level, type, message, data_json) VALUES(?,?,?,?,?)",
                (ts, level, type, message, json.dumps(data or {}, default=str)),
            )

    def list_events(self, limit: int = 200) -> List[JsonDict]:
        with self._lock, _wrap_errors("list_events"):
            rows = self._conn.execute(
                "SELECT ts, level, type, message, data_json FROM events ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        out: List[JsonDict] = []
        for r in rows:
            out.append(
                {
                    "ts": r["ts"],
                    "level": r["level"],
                    "type": r["type"],
                    "message": r["message"],
                    "data": json.loads(r["data_json"] or "{}"),
                }
            )
        return out

    # --------- balances ---------
    def get_balances(self, owner_id: str) -> UserBalances:
        """Balances of an owner; an owner without a row has zero balances."""
        with self._lock, _wrap_errors("get_balances"):
            row = self._conn.execute(
                "SELECT main_balance, bot_balance FROM users WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        if row is None:
            return UserBalances(owner_id=owner_id)
        return UserBalances(
            owner_id=owner_id,
            main_balance=Decimal(row["main_balance"]),
            bot_balance=Decimal(row["bot_balance"]),
        )

    def adjust_balances(
        self,
        owner_id: str,
        *,
        main_delta: Decimal = Decimal("0"),
        bot_delta: Decimal = Decimal("0"),
    ) -> UserBalances:
        with self.transaction():
            current = self.get_balances(owner_id)
            updated = UserBalances(
                owner_id=owner_id,
                main_balance=current.main_balance + main_delta,
                bot_balance=current.bot_balance + bot_delta,
            )
            with _wrap_errors("adjust_balances"):
                self._conn.execute(
                    """
                    INSERT INTO users(owner_id, main_balance, bot_balance, updated_at) VALUES(?,?,?,?)
                    ON CONFLICT(owner_id) DO UPDATE SET
                      main_balance = excluded.main_balance,
                      bot_balance = excluded.bot_balance,
                      updated_at = excluded.updated_at
                    """,
                    (owner_id, str(updated.main_balance), str(updated.bot_balance), _ts(utc_now())),
                )
        return updated

    # --------- token catalog ---------
    def seed_tokens(self, tokens: Iterable[BotToken]) -> int:
        """Insert catalog rows that are not there yet; existing rows keep their admin edits."""
        rows = [(t.symbol, t.name, t.image_url, t.status.value) for t in tokens]
        with self._lock, _wrap_errors("seed_tokens"):
            before = self._conn.total_changes
            self._conn.executemany(
                "INSERT OR IGNORE INTO bot_tokens(symbol, name, image_url, status) VALUES(?,?,?,?)",
                rows,
            )
            return self._conn.total_changes - before

    def upsert_token(self, token: BotToken) -> None:
        with self._lock, _wrap_errors("upsert_token"):
            self._conn.execute(
                """
                INSERT INTO bot_tokens(symbol, name, image_url, status) VALUES(?,?,?,?)
                ON CONFLICT(symbol) DO UPDATE SET
                  name = excluded.name,
                  image_url = excluded.image_url,
                  status = excluded.status
                """,
                (token.symbol, token.name, token.image_url, token.status.value),
            )

    def list_tokens(self, *, active_only: bool = False) -> List[BotToken]:
        sql = "SELECT * FROM bot_tokens"
        params: List[Any] = []
        if active_only:
            sql += " WHERE status = ?"
            params.append(TokenStatus.ACTIVE.value)
        sql += " ORDER BY symbol"
        with self._lock, _wrap_errors("list_tokens"):
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_token(r) for r in rows]

    def get_tokens(self, symbols: Iterable[str]) -> Dict[str, BotToken]:
        wanted = list(symbols)
        if not wanted:
            return {}
        marks = ",".join("?" for _ in wanted)
        with self._lock, _wrap_errors("get_tokens"):
            rows = self._conn.execute(f"SELECT * FROM bot_tokens WHERE symbol IN ({marks})", wanted).fetchall()
        return {r["symbol"]: self._row_to_token(r) for r in rows}

    @staticmethod
    def _row_to_token(row: sqlite3.Row) -> BotToken:
        return BotToken(
            symbol=row["symbol"],
            name=row["name"],
            image_url=row["image_url"],
            status=TokenStatus(row["status"]),
        )

    # --------- bot trades ---------
    def insert_trade(self, trade: BotTrade) -> None:
        with self._lock, _wrap_errors("insert_trade"):
            self._conn.execute(
                """
                INSERT INTO bot_trades(
                  id, owner_id, invest_amount, coins_json, timer_hours, open_time, status,
                  profit_or_lose, profit_percent, return_amount, profit, close_time
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    trade.id,
                    trade.owner_id,
                    str(trade.invest_amount),
                    json.dumps(list(trade.coins)),
                    int(trade.timer_hours),
                    _ts(trade.open_time),
                    trade.status.value,
                    trade.profit_or_lose.value,
                    str(trade.profit_percent),
                    str(trade.return_amount),
                    str(trade.profit),
                    _ts(trade.close_time) if trade.close_time else None,
                ),
            )

    def get_trade(self, trade_id: str, owner_id: Optional[str] = None) -> Optional[BotTrade]:
        sql = "SELECT * FROM bot_trades WHERE id = ?"
        params: List[Any] = [trade_id]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        with self._lock, _wrap_errors("get_trade"):
            row = self._conn.execute(sql, params).fetchone()
        return self._row_to_trade(row) if row else None

    def list_trades(
        self,
        owner_id: str,
        *,
        status: Optional[TradeStatus] = None,
        limit: int = 200,
    ) -> List[BotTrade]:
        sql = "SELECT * FROM bot_trades WHERE owner_id = ?"
        params: List[Any] = [owner_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY open_time DESC LIMIT ?"
        params.append(limit)
        with self._lock, _wrap_errors("list_trades"):
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_trade(r) for r in rows]

    def list_active_trades(self, owner_id: str) -> List[BotTrade]:
        """Active trades, oldest first."""
        with self._lock, _wrap_errors("list_active_trades"):
            rows = self._conn.execute(
                "SELECT * FROM bot_trades WHERE owner_id = ? AND status = ? ORDER BY open_time ASC",
                (owner_id, TradeStatus.ACTIVE.value),
            ).fetchall()
        return [self._row_to_trade(r) for r in rows]

    def list_owners_with_active_trades(self) -> List[str]:
        with self._lock, _wrap_errors("list_owners_with_active_trades"):
            rows = self._conn.execute(
                "SELECT DISTINCT owner_id FROM bot_trades WHERE status = ? ORDER BY owner_id",
                (TradeStatus.ACTIVE.value,),
            ).fetchall()
        return [r["owner_id"] for r in rows]

    def count_trades_since(self, owner_id: str, since: datetime) -> int:
        """Number of trades the owner opened at or after ``since``."""
        with self._lock, _wrap_errors("count_trades_since"):
            row = self._conn.execute(
                "SELECT COUNT(*) FROM bot_trades WHERE owner_id = ? AND open_time >= ?",
                (owner_id, _ts(since)),
            ).fetchone()
        return int(row[0]) if row else 0

    def complete_trade(
        self,
        trade_id: str,
        *,
        outcome: TradeOutcome,
        profit: Decimal,
        return_amount: Decimal,
        close_time: datetime,
    ) -> bool:
        """Compare-and-swap active -> completed. False if the trade was no longer active."""
        with self._lock, _wrap_errors("complete_trade"):
            cur = self._conn.execute(
                """
                UPDATE bot_trades
                SET status = ?, profit_or_lose = ?, profit = ?, return_amount = ?, close_time = ?
                WHERE id = ? AND status = ?
                """,
                (
                    TradeStatus.COMPLETED.value,
                    outcome.value,
                    str(profit),
                    str(return_amount),
                    _ts(close_time),
                    trade_id,
                    TradeStatus.ACTIVE.value,
                ),
            )
        return cur.rowcount == 1

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> BotTrade:
        return BotTrade(
            id=row["id"],
            owner_id=row["owner_id"],
            invest_amount=Decimal(row["invest_amount"]),
            coins=tuple(json.loads(row["coins_json"])),
            timer_hours=int(row["timer_hours"]),
            open_time=parse_utc(row["open_time"]),
            profit_percent=Decimal(row["profit_percent"]),
            status=TradeStatus(row["status"]),
            profit_or_lose=TradeOutcome(row["profit_or_lose"]),
            return_amount=Decimal(row["return_amount"]),
            profit=Decimal(row["profit"]),
            close_time=parse_utc(row["close_time"]) if row["close_time"] else None,
        )
