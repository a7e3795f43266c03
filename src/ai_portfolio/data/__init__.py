"""SQLite-backed store for portfolios, holdings, orders, and snapshots."""

import sqlite3
import threading
import uuid
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from ai_portfolio.exceptions import PersistenceError
from ai_portfolio.models import (
    Action,
    AssetType,
    Holding,
    Order,
    Portfolio,
    PortfolioStatus,
    RebalanceCadence,
    Snapshot,
    TradeSide,
)


def _dec(value) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _day(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class DataStore:
    """Persists engine state. Money and share counts are stored as text decimals."""

    def __init__(self, db_path: str | Path = "ai_portfolio.db"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS portfolios (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                owner_id TEXT,
                asset_type TEXT NOT NULL DEFAULT 'stock',
                starting_capital TEXT NOT NULL,
                current_cash TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'initializing',
                rebalance_cadence TEXT,
                next_rebalance_date TEXT,
                previous_rebalance_date TEXT,
                last_traded_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS holdings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                portfolio_id TEXT NOT NULL,
                ticker TEXT NOT NULL,
                shares TEXT NOT NULL,
                avg_cost TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(portfolio_id, ticker),
                FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                portfolio_id TEXT NOT NULL,
                ticker TEXT NOT NULL,
                action TEXT NOT NULL,
                side TEXT NOT NULL CHECK (side IN ('buy', 'sell')),
                shares TEXT NOT NULL,
                price TEXT NOT NULL,
                total_value TEXT NOT NULL,
                reasoning TEXT,
                is_pending INTEGER NOT NULL DEFAULT 0,
                executed_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                portfolio_id TEXT NOT NULL,
                snapshot_date TEXT NOT NULL,
                total_value TEXT NOT NULL,
                cash TEXT NOT NULL,
                holdings_value TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(portfolio_id, snapshot_date),
                FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_orders_portfolio ON orders(portfolio_id);
            CREATE INDEX IF NOT EXISTS idx_orders_pending ON orders(portfolio_id, is_pending);
        """)
        self.conn.commit()

    def reset(self):
        """Delete all rows from every table."""
        with self._lock:
            self.conn.executescript("""
                DELETE FROM snapshots;
                DELETE FROM orders;
                DELETE FROM holdings;
                DELETE FROM portfolios;
            """)
            self.conn.commit()

    def _write(self, fn):
        """Run fn(conn) in a single transaction, mapping sqlite errors."""
        with self._lock:
            try:
                with self.conn:
                    return fn(self.conn)
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    # ------------------------------------------------------------------
    # Portfolios
    # ------------------------------------------------------------------

    def create_portfolio(
        self,
        name: str,
        starting_capital: Decimal,
        asset_type: AssetType = AssetType.STOCK,
        owner_id: str | None = None,
        rebalance_cadence: RebalanceCadence | None = None,
        next_rebalance_date: date | None = None,
    ) -> Portfolio:
        portfolio = Portfolio(
            id=uuid.uuid4().hex,
            name=name,
            owner_id=owner_id,
            asset_type=asset_type,
            starting_capital=starting_capital,
            current_cash=starting_capital,
            status=PortfolioStatus.INITIALIZING,
            rebalance_cadence=rebalance_cadence,
            next_rebalance_date=next_rebalance_date,
        )
        self._write(
            lambda c: c.execute(
                """INSERT INTO portfolios
                   (id, name, owner_id, asset_type, starting_capital, current_cash, status,
                    rebalance_cadence, next_rebalance_date, previous_rebalance_date,
                    last_traded_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    portfolio.id,
                    portfolio.name,
                    portfolio.owner_id,
                    portfolio.asset_type.value,
                    str(portfolio.starting_capital),
                    str(portfolio.current_cash),
                    portfolio.status.value,
                    portfolio.rebalance_cadence.value if portfolio.rebalance_cadence else None,
                    _iso(portfolio.next_rebalance_date),
                    None,
                    None,
                    portfolio.created_at.isoformat(),
                ),
            )
        )
        return portfolio

    def get_portfolio(self, portfolio_id: str) -> Portfolio | None:
        rows = self._read("SELECT * FROM portfolios WHERE id = ?", (portfolio_id,))
        if not rows:
            return None
        row = rows[0]
        return Portfolio(
            id=row["id"],
            name=row["name"],
            owner_id=row["owner_id"],
            asset_type=AssetType(row["asset_type"]),
            starting_capital=Decimal(row["starting_capital"]),
            current_cash=Decimal(row["current_cash"]),
            status=PortfolioStatus(row["status"]),
            rebalance_cadence=(
                RebalanceCadence(row["rebalance_cadence"]) if row["rebalance_cadence"] else None
            ),
            next_rebalance_date=_day(row["next_rebalance_date"]),
            previous_rebalance_date=_day(row["previous_rebalance_date"]),
            last_traded_at=_ts(row["last_traded_at"]),
            created_at=_ts(row["created_at"]),
        )

    def list_portfolios(self, status: PortfolioStatus | None = None) -> list[Portfolio]:
        if status is None:
            rows = self._read("SELECT id FROM portfolios ORDER BY created_at")
        else:
            rows = self._read(
                "SELECT id FROM portfolios WHERE status = ? ORDER BY created_at", (status.value,)
            )
        return [p for p in (self.get_portfolio(r["id"]) for r in rows) if p is not None]

    def _update_portfolio(self, portfolio_id: str, sql: str, params: tuple) -> None:
        def run(c):
            cursor = c.execute(sql, params + (portfolio_id,))
            if cursor.rowcount == 0:
                raise PersistenceError(f"Portfolio {portfolio_id} not found")

        self._write(run)

    def set_status(self, portfolio_id: str, status: PortfolioStatus) -> None:
        self._update_portfolio(
            portfolio_id, "UPDATE portfolios SET status = ? WHERE id = ?", (status.value,)
        )

    def update_cash(
        self, portfolio_id: str, cash: Decimal, last_traded_at: datetime | None = None
    ) -> None:
        """Single write of cash and last-traded timestamp after a batch."""
        self._update_portfolio(
            portfolio_id,
            "UPDATE portfolios SET current_cash = ?, last_traded_at = ? WHERE id = ?",
            (str(cash), _iso(last_traded_at or datetime.now())),
        )

    def update_rebalance_dates(
        self, portfolio_id: str, previous: date | None, upcoming: date | None
    ) -> None:
        self._update_portfolio(
            portfolio_id,
            "UPDATE portfolios SET previous_rebalance_date = ?, next_rebalance_date = ? "
            "WHERE id = ?",
            (_iso(previous), _iso(upcoming)),
        )

    # ------------------------------------------------------------------
    # Holdings and orders
    # ------------------------------------------------------------------

    def list_holdings(self, portfolio_id: str) -> list[Holding]:
        rows = self._read(
            "SELECT * FROM holdings WHERE portfolio_id = ? ORDER BY ticker", (portfolio_id,)
        )
        return [
            Holding(
                portfolio_id=row["portfolio_id"],
                ticker=row["ticker"],
                shares=Decimal(row["shares"]),
                avg_cost=Decimal(row["avg_cost"]),
                updated_at=_ts(row["updated_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _insert_order(conn: sqlite3.Connection, order: Order) -> Order:
        if not order.is_pending and order.executed_at is None:
            raise PersistenceError(f"Refusing to store unexecuted {order.ticker} order")
        cursor = conn.execute(
            """INSERT INTO orders
               (portfolio_id, ticker, action, side, shares, price, total_value,
                reasoning, is_pending, executed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                order.portfolio_id,
                order.ticker,
                order.action.value,
                order.side.value,
                str(order.shares),
                str(order.price),
                str(order.total_value),
                order.reasoning,
                1 if order.is_pending else 0,
                _iso(order.executed_at),
                order.created_at.isoformat(),
            ),
        )
        return order.model_copy(update={"id": cursor.lastrowid})

    def insert_order(self, order: Order) -> Order:
        """Record an order on its own (pending orders). Returns it with its id."""
        return self._write(lambda c: self._insert_order(c, order))

    def apply_trade(self, order: Order, ticker: str, holding: Holding | None) -> Order:
        """Record an executed order and its holding change in one transaction.

        A holding of None deletes the row for ticker.
        """

        def run(c):
            saved = self._insert_order(c, order)
            if holding is None:
                c.execute(
                    "DELETE FROM holdings WHERE portfolio_id = ? AND ticker = ?",
                    (order.portfolio_id, ticker),
                )
            else:
                c.execute(
                    """INSERT INTO holdings (portfolio_id, ticker, shares, avg_cost, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(portfolio_id, ticker) DO UPDATE SET
                           shares = excluded.shares,
                           avg_cost = excluded.avg_cost,
                           updated_at = excluded.updated_at""",
                    (
                        holding.portfolio_id,
                        holding.ticker,
                        str(holding.shares),
                        str(holding.avg_cost),
                        holding.updated_at.isoformat(),
                    ),
                )
            return saved

        return self._write(run)

    def list_orders(self, portfolio_id: str, pending: bool | None = None) -> list[Order]:
        sql = "SELECT * FROM orders WHERE portfolio_id = ?"
        params: tuple = (portfolio_id,)
        if pending is not None:
            sql += " AND is_pending = ?"
            params += (1 if pending else 0,)
        rows = self._read(sql + " ORDER BY id", params)
        return [
            Order(
                id=row["id"],
                portfolio_id=row["portfolio_id"],
                ticker=row["ticker"],
                action=Action(row["action"]),
                side=TradeSide(row["side"]),
                shares=Decimal(row["shares"]),
                price=Decimal(row["price"]),
                total_value=Decimal(row["total_value"]),
                reasoning=row["reasoning"],
                is_pending=bool(row["is_pending"]),
                executed_at=_ts(row["executed_at"]),
                created_at=_ts(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def upsert_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """Insert or overwrite the snapshot for (portfolio_id, snapshot_date)."""
        self._write(
            lambda c: c.execute(
                """INSERT INTO snapshots
                   (portfolio_id, snapshot_date, total_value, cash, holdings_value, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(portfolio_id, snapshot_date) DO UPDATE SET
                       total_value = excluded.total_value,
                       cash = excluded.cash,
                       holdings_value = excluded.holdings_value,
                       created_at = excluded.created_at""",
                (
                    snapshot.portfolio_id,
                    snapshot.snapshot_date.isoformat(),
                    str(snapshot.total_value),
                    str(snapshot.cash),
                    str(snapshot.holdings_value),
                    snapshot.created_at.isoformat(),
                ),
            )
        )
        return snapshot

    @staticmethod
    def _snapshot_from_row(row: sqlite3.Row) -> Snapshot:
        return Snapshot(
            portfolio_id=row["portfolio_id"],
            snapshot_date=date.fromisoformat(row["snapshot_date"]),
            total_value=Decimal(row["total_value"]),
            cash=Decimal(row["cash"]),
            holdings_value=Decimal(row["holdings_value"]),
            created_at=_ts(row["created_at"]),
        )

    def get_snapshot(self, portfolio_id: str, snapshot_date: date) -> Snapshot | None:
        rows = self._read(
            "SELECT * FROM snapshots WHERE portfolio_id = ? AND snapshot_date = ?",
            (portfolio_id, snapshot_date.isoformat()),
        )
        return self._snapshot_from_row(rows[0]) if rows else None

    def latest_snapshot(self, portfolio_id: str) -> Snapshot | None:
        rows = self._read(
            "SELECT * FROM snapshots WHERE portfolio_id = ? "
            "ORDER BY snapshot_date DESC LIMIT 1",
            (portfolio_id,),
        )
        return self._snapshot_from_row(rows[0]) if rows else None

    def list_snapshots(self, portfolio_id: str) -> list[Snapshot]:
        rows = self._read(
            "SELECT * FROM snapshots WHERE portfolio_id = ? ORDER BY snapshot_date",
            (portfolio_id,),
        )
        return [self._snapshot_from_row(row) for row in rows]

    def close(self):
        self.conn.close()
