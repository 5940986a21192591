"""SQLite storage layer.

Implements the Storage protocol on a single local SQLite database. Ticks and
market events are append-only audit tables; orders, holdings and portfolios
are the trading state. Multi-row changes run inside ``with self.db:`` so
SQLite commits them together or rolls all of them back.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path

from core.models.market import Quote
from core.models.market_events import MarketEvent, parse_market_event
from core.models.orders import Fill, Order, OrderStatus
from core.models.portfolio import Holding, PortfolioSnapshot, PortfolioTotals

logger = logging.getLogger(__name__)


class Store:
    """SQLite-backed Storage implementation.

    Calls are synchronous underneath; a local SQLite write is short enough
    to run inline on the event loop.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db: sqlite3.Connection | None = None
        self._init_sqlite()

    # ------------------------------------------------------------------
    # SQLite
    # ------------------------------------------------------------------

    def _init_sqlite(self) -> None:
        """Initialize SQLite database and create tables if needed."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(self._db_path))
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")

        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS ticks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                price REAL NOT NULL,
                bid REAL NOT NULL,
                ask REAL NOT NULL,
                change REAL DEFAULT 0.0,
                change_percent REAL DEFAULT 0.0,
                volume INTEGER DEFAULT 0,
                volatility REAL DEFAULT 0.0,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_ticks_symbol
                ON ticks(symbol, id);

            CREATE TABLE IF NOT EXISTS market_events (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                payload TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_created
                ON market_events(created_at);

            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                user_ref TEXT NOT NULL,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                kind TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                limit_price REAL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                filled_at TEXT,
                executed_price REAL,
                realized_pnl REAL,
                reserved_cash REAL DEFAULT 0.0,
                reserved_quantity INTEGER DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_orders_user_status
                ON orders(user_ref, status, created_at);

            CREATE TABLE IF NOT EXISTS holdings (
                user_ref TEXT NOT NULL,
                symbol TEXT NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity > 0),
                average_cost REAL NOT NULL,
                PRIMARY KEY (user_ref, symbol)
            );

            CREATE TABLE IF NOT EXISTS portfolios (
                user_ref TEXT NOT NULL,
                session_date TEXT NOT NULL,
                starting_cash REAL NOT NULL,
                cash REAL NOT NULL,
                total_value REAL DEFAULT 0.0,
                day_change REAL DEFAULT 0.0,
                day_change_percent REAL DEFAULT 0.0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_ref, session_date)
            );
        """)
        self._db.commit()
        logger.info("SQLite initialized at %s", self._db_path)

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized")
        return self._db

    def close(self) -> None:
        """Close the SQLite connection."""
        if self._db:
            self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Ticks and market events (audit)
    # ------------------------------------------------------------------

    async def insert_tick(self, symbol: str, quote: Quote) -> None:
        self.db.execute(
            """INSERT INTO ticks
               (symbol, price, bid, ask, change, change_percent, volume, volatility, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                symbol,
                quote.price,
                quote.bid,
                quote.ask,
                quote.change,
                quote.change_percent,
                quote.volume,
                quote.volatility,
                quote.timestamp.isoformat(),
            ),
        )
        self.db.commit()

    async def insert_event(self, event: MarketEvent) -> None:
        self.db.execute(
            """INSERT OR REPLACE INTO market_events (id, type, created_at, payload)
               VALUES (?, ?, ?, ?)""",
            (event.id, event.type, event.created_at.isoformat(), event.model_dump_json()),
        )
        self.db.commit()

    async def get_latest_quotes(self, symbols: list[str] | None = None) -> dict[str, Quote]:
        """Most recent tick per symbol (highest rowid wins)."""
        conditions = ""
        params: list = []
        if symbols is not None:
            if not symbols:
                return {}
            conditions = f"WHERE symbol IN ({', '.join('?' for _ in symbols)})"
            params.extend(symbols)

        rows = self.db.execute(
            f"""SELECT * FROM ticks WHERE id IN (
                    SELECT MAX(id) FROM ticks {conditions} GROUP BY symbol
                )""",
            params,
        ).fetchall()
        return {row["symbol"]: self._row_to_quote(row) for row in rows}

    async def list_ticks(self, symbol: str, limit: int = 100) -> list[Quote]:
        rows = self.db.execute(
            "SELECT * FROM ticks WHERE symbol = ? ORDER BY id DESC LIMIT ?",
            (symbol, limit),
        ).fetchall()
        return [self._row_to_quote(r) for r in rows]

    async def list_events(self, limit: int = 50) -> list[MarketEvent]:
        rows = self.db.execute(
            "SELECT payload FROM market_events ORDER BY created_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        events = []
        for row in rows:
            try:
                events.append(parse_market_event(json.loads(row["payload"])))
            except ValueError:
                logger.exception("Skipping unreadable market event row")
        return events

    # ------------------------------------------------------------------
    # Holdings
    # ------------------------------------------------------------------

    async def upsert_holding(
        self,
        user_ref: str,
        symbol: str,
        quantity_delta: int,
        price: float | None = None,
    ) -> Holding | None:
        with self.db:
            holding = self._apply_holding_delta(user_ref, symbol, quantity_delta, price)
        return self._with_reservation(user_ref, holding)

    async def list_holdings(self, user_ref: str) -> list[Holding]:
        rows = self.db.execute(
            "SELECT * FROM holdings WHERE user_ref = ? ORDER BY symbol",
            (user_ref,),
        ).fetchall()
        return [self._with_reservation(user_ref, self._row_to_holding(r)) for r in rows]

    def _apply_holding_delta(
        self,
        user_ref: str,
        symbol: str,
        quantity_delta: int,
        price: float | None,
    ) -> Holding | None:
        """Write the holding change; caller owns the transaction."""
        row = self.db.execute(
            "SELECT * FROM holdings WHERE user_ref = ? AND symbol = ?",
            (user_ref, symbol),
        ).fetchone()
        current = self._row_to_holding(row) if row else None

        if quantity_delta > 0:
            if price is None or price <= 0:
                raise ValueError("A positive holding delta needs a fill price")
            updated = (
                current.after_buy(quantity_delta, price) if current
                else Holding(symbol=symbol, quantity=quantity_delta, average_cost=price)
            )
            self.db.execute(
                """INSERT OR REPLACE INTO holdings (user_ref, symbol, quantity, average_cost)
                   VALUES (?, ?, ?, ?)""",
                (user_ref, symbol, updated.quantity, updated.average_cost),
            )
            return updated

        if quantity_delta < 0:
            held = current.quantity if current else 0
            remaining = held + quantity_delta
            if remaining < 0:
                raise ValueError(f"Cannot remove {-quantity_delta} {symbol}: only {held} held")
            if remaining == 0:
                self.db.execute(
                    "DELETE FROM holdings WHERE user_ref = ? AND symbol = ?",
                    (user_ref, symbol),
                )
                return None
            self.db.execute(
                "UPDATE holdings SET quantity = ? WHERE user_ref = ? AND symbol = ?",
                (remaining, user_ref, symbol),
            )
            return current.model_copy(update={"quantity": remaining})

        return current

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, order: Order) -> Order:
        with self.db:
            self.db.execute(
                """INSERT INTO orders
                   (id, user_ref, symbol, side, kind, quantity, limit_price, status,
                    created_at, filled_at, executed_price, realized_pnl,
                    reserved_cash, reserved_quantity)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                self._order_params(order),
            )
        return order

    async def get_order(self, order_id: str) -> Order | None:
        row = self.db.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        return self._row_to_order(row) if row else None

    async def list_orders(
        self,
        user_ref: str | None = None,
        status: OrderStatus | None = None,
        symbol: str | None = None,
    ) -> list[Order]:
        conditions = []
        params: list = []

        if user_ref:
            conditions.append("user_ref = ?")
            params.append(user_ref)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if symbol:
            conditions.append("symbol = ?")
            params.append(symbol)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.db.execute(
            f"SELECT * FROM orders {where} ORDER BY created_at ASC, rowid ASC",
            params,
        ).fetchall()
        return [self._row_to_order(r) for r in rows]

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        with self.db:
            cursor = self.db.execute(
                "UPDATE orders SET status = ? WHERE id = ? AND status = 'open'",
                (status, order_id),
            )
            if cursor.rowcount != 1:
                existing = await self.get_order(order_id)
                if existing is None:
                    raise KeyError(f"Unknown order {order_id}")
                raise ValueError(f"Order {order_id} is {existing.status}, not open")
        order = await self.get_order(order_id)
        assert order is not None
        return order

    async def commit_fill(self, user_ref: str, session_date: date, fill: Fill) -> PortfolioSnapshot:
        """Write the filled order, the cash movement and the holding change together."""
        order = fill.order
        with self.db:
            row = self.db.execute(
                "SELECT cash FROM portfolios WHERE user_ref = ? AND session_date = ?",
                (user_ref, session_date.isoformat()),
            ).fetchone()
            if row is None:
                raise KeyError(f"No portfolio for {user_ref} on {session_date}")

            previous = self.db.execute(
                "SELECT status FROM orders WHERE id = ?", (order.id,),
            ).fetchone()
            if previous is not None and previous["status"] != "open":
                raise ValueError(f"Order {order.id} is already {previous['status']}")

            new_cash = row["cash"] + fill.cash_delta
            if order.side == "buy":
                reserved = self._reserved_cash(user_ref, exclude_order=order.id)
                if new_cash < reserved - 1e-9:
                    raise ValueError(f"Fill would overdraw {user_ref}: cash {new_cash:.2f}")

            self.db.execute(
                """UPDATE portfolios SET cash = ?, updated_at = ?
                   WHERE user_ref = ? AND session_date = ?""",
                (new_cash, datetime.now(timezone.utc).isoformat(), user_ref, session_date.isoformat()),
            )
            delta = fill.quantity if order.side == "buy" else -fill.quantity
            self._apply_holding_delta(user_ref, order.symbol, delta, fill.price)
            self.db.execute(
                """INSERT OR REPLACE INTO orders
                   (id, user_ref, symbol, side, kind, quantity, limit_price, status,
                    created_at, filled_at, executed_price, realized_pnl,
                    reserved_cash, reserved_quantity)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                self._order_params(order),
            )

        snapshot = await self.get_portfolio(user_ref, session_date)
        assert snapshot is not None
        return snapshot

    # ------------------------------------------------------------------
    # Portfolios
    # ------------------------------------------------------------------

    async def get_portfolio(self, user_ref: str, session_date: date) -> PortfolioSnapshot | None:
        row = self.db.execute(
            "SELECT * FROM portfolios WHERE user_ref = ? AND session_date = ?",
            (user_ref, session_date.isoformat()),
        ).fetchone()
        if row is None:
            return None
        return await self._row_to_portfolio(row)

    async def create_portfolio(self, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        with self.db:
            self.db.execute(
                """INSERT OR IGNORE INTO portfolios
                   (user_ref, session_date, starting_cash, cash, total_value,
                    day_change, day_change_percent, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                self._portfolio_params(snapshot),
            )
        created = await self.get_portfolio(snapshot.user_ref, snapshot.session_date)
        assert created is not None
        return created

    async def update_portfolio(self, user_ref: str, session_date: date, totals: PortfolioTotals) -> None:
        with self.db:
            cursor = self.db.execute(
                """UPDATE portfolios
                   SET total_value = ?, day_change = ?, day_change_percent = ?, updated_at = ?
                   WHERE user_ref = ? AND session_date = ?""",
                (
                    totals.total_value,
                    totals.day_change,
                    totals.day_change_percent,
                    datetime.now(timezone.utc).isoformat(),
                    user_ref,
                    session_date.isoformat(),
                ),
            )
        if cursor.rowcount != 1:
            raise KeyError(f"No portfolio for {user_ref} on {session_date}")

    async def list_portfolios(self, user_ref: str) -> list[PortfolioSnapshot]:
        rows = self.db.execute(
            "SELECT * FROM portfolios WHERE user_ref = ? ORDER BY session_date ASC",
            (user_ref,),
        ).fetchall()
        return [await self._row_to_portfolio(r) for r in rows]

    async def list_session_portfolios(self, session_date: date) -> list[PortfolioSnapshot]:
        rows = self.db.execute(
            "SELECT * FROM portfolios WHERE session_date = ? ORDER BY user_ref ASC",
            (session_date.isoformat(),),
        ).fetchall()
        return [await self._row_to_portfolio(r) for r in rows]

    async def reset_session(self, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        with self.db:
            self.db.execute(
                "UPDATE orders SET status = 'cancelled' WHERE user_ref = ? AND status = 'open'",
                (snapshot.user_ref,),
            )
            self.db.execute("DELETE FROM holdings WHERE user_ref = ?", (snapshot.user_ref,))
            self.db.execute(
                """INSERT OR REPLACE INTO portfolios
                   (user_ref, session_date, starting_cash, cash, total_value,
                    day_change, day_change_percent, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                self._portfolio_params(snapshot),
            )
        stored = await self.get_portfolio(snapshot.user_ref, snapshot.session_date)
        assert stored is not None
        return stored

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _reserved_cash(self, user_ref: str, exclude_order: str | None = None) -> float:
        row = self.db.execute(
            """SELECT COALESCE(SUM(reserved_cash), 0.0) AS reserved FROM orders
               WHERE user_ref = ? AND status = 'open' AND id != ?""",
            (user_ref, exclude_order or ""),
        ).fetchone()
        return float(row["reserved"])

    def _with_reservation(self, user_ref: str, holding: Holding | None) -> Holding | None:
        if holding is None:
            return None
        row = self.db.execute(
            """SELECT COALESCE(SUM(reserved_quantity), 0) AS reserved FROM orders
               WHERE user_ref = ? AND symbol = ? AND status = 'open'""",
            (user_ref, holding.symbol),
        ).fetchone()
        return holding.model_copy(update={"reserved_quantity": int(row["reserved"])})

    async def _row_to_portfolio(self, row: sqlite3.Row) -> PortfolioSnapshot:
        user_ref = row["user_ref"]
        return PortfolioSnapshot(
            user_ref=user_ref,
            session_date=date.fromisoformat(row["session_date"]),
            starting_cash=row["starting_cash"],
            cash=row["cash"],
            reserved_cash=self._reserved_cash(user_ref),
            total_value=row["total_value"],
            day_change=row["day_change"],
            day_change_percent=row["day_change_percent"],
            holdings=await self.list_holdings(user_ref),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _portfolio_params(self, snapshot: PortfolioSnapshot) -> tuple:
        return (
            snapshot.user_ref,
            snapshot.session_date.isoformat(),
            snapshot.starting_cash,
            snapshot.cash,
            snapshot.total_value,
            snapshot.day_change,
            snapshot.day_change_percent,
            snapshot.updated_at.isoformat(),
        )

    def _order_params(self, order: Order) -> tuple:
        return (
            order.id,
            order.user_ref,
            order.symbol,
            order.side,
            order.kind,
            order.quantity,
            order.limit_price,
            order.status,
            order.created_at.isoformat(),
            order.filled_at.isoformat() if order.filled_at else None,
            order.executed_price,
            order.realized_pnl,
            order.reserved_cash,
            order.reserved_quantity,
        )

    def _row_to_order(self, row: sqlite3.Row) -> Order:
        return Order(
            id=row["id"],
            user_ref=row["user_ref"],
            symbol=row["symbol"],
            side=row["side"],
            kind=row["kind"],
            quantity=row["quantity"],
            limit_price=row["limit_price"],
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            filled_at=datetime.fromisoformat(row["filled_at"]) if row["filled_at"] else None,
            executed_price=row["executed_price"],
            realized_pnl=row["realized_pnl"],
            reserved_cash=row["reserved_cash"] or 0.0,
            reserved_quantity=row["reserved_quantity"] or 0,
        )

    def _row_to_holding(self, row: sqlite3.Row) -> Holding:
        return Holding(
            symbol=row["symbol"],
            quantity=row["quantity"],
            average_cost=row["average_cost"],
        )

    def _row_to_quote(self, row: sqlite3.Row) -> Quote:
        return Quote(
            symbol=row["symbol"],
            price=row["price"],
            bid=row["bid"],
            ask=row["ask"],
            change=row["change"],
            change_percent=row["change_percent"],
            volume=row["volume"],
            volatility=row["volatility"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )
