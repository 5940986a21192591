"""In-memory storage -- implements the Storage protocol without any I/O.

Used by tests, by the ``memory`` storage backend and as the reference for
the SQLite Store semantics. Reservations are not stored separately: a
portfolio's reserved cash and a holding's reserved shares are always the sum
over the user's open orders, so placing or cancelling an order is a single
record write.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone

from core.models.market import Quote
from core.models.market_events import MarketEvent
from core.models.orders import Fill, Order, OrderStatus
from core.models.portfolio import Holding, PortfolioSnapshot, PortfolioTotals

logger = logging.getLogger(__name__)


class MemoryStore:
    """Dict-backed Storage implementation.

    Every mutating method computes its complete result before assigning
    anything, so a raised error leaves no partial state behind.
    """

    def __init__(self, max_ticks_per_symbol: int = 1_000) -> None:
        self._ticks: dict[str, list[Quote]] = defaultdict(list)
        self._events: list[MarketEvent] = []
        self._orders: dict[str, Order] = {}
        self._portfolios: dict[tuple[str, date], PortfolioSnapshot] = {}
        self._holdings: dict[str, dict[str, Holding]] = defaultdict(dict)
        self._max_ticks = max_ticks_per_symbol

    # ------------------------------------------------------------------
    # Audit records
    # ------------------------------------------------------------------

    async def insert_tick(self, symbol: str, quote: Quote) -> None:
        ticks = self._ticks[symbol]
        ticks.append(quote)
        if len(ticks) > self._max_ticks:
            del ticks[: len(ticks) - self._max_ticks]

    async def insert_event(self, event: MarketEvent) -> None:
        self._events.append(event)

    async def get_latest_quotes(self, symbols: list[str] | None = None) -> dict[str, Quote]:
        wanted = symbols if symbols is not None else list(self._ticks)
        return {s: self._ticks[s][-1] for s in wanted if self._ticks.get(s)}

    async def list_ticks(self, symbol: str, limit: int = 100) -> list[Quote]:
        return list(reversed(self._ticks.get(symbol, [])))[:limit]

    async def list_events(self, limit: int = 50) -> list[MarketEvent]:
        return sorted(self._events, key=lambda e: e.created_at, reverse=True)[:limit]

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
        holdings = self._holdings[user_ref]
        updated = _apply_holding_delta(holdings.get(symbol), symbol, quantity_delta, price)
        if updated is None:
            holdings.pop(symbol, None)
        else:
            holdings[symbol] = updated
        return self._with_reservation(user_ref, updated)

    async def list_holdings(self, user_ref: str) -> list[Holding]:
        return [
            self._with_reservation(user_ref, h)
            for h in sorted(self._holdings.get(user_ref, {}).values(), key=lambda h: h.symbol)
        ]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, order: Order) -> Order:
        if order.id in self._orders:
            raise ValueError(f"Order {order.id} already exists")
        self._orders[order.id] = order.model_copy(deep=True)
        return order

    async def get_order(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders(
        self,
        user_ref: str | None = None,
        status: OrderStatus | None = None,
        symbol: str | None = None,
    ) -> list[Order]:
        orders = [
            o for o in self._orders.values()
            if (user_ref is None or o.user_ref == user_ref)
            and (status is None or o.status == status)
            and (symbol is None or o.symbol == symbol)
        ]
        return [o.model_copy(deep=True) for o in sorted(orders, key=lambda o: o.created_at)]

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise KeyError(f"Unknown order {order_id}")
        if order.status != "open":
            raise ValueError(f"Order {order_id} is {order.status}, not open")
        updated = order.model_copy(update={"status": status})
        self._orders[order_id] = updated
        return updated.model_copy(deep=True)

    async def commit_fill(self, user_ref: str, session_date: date, fill: Fill) -> PortfolioSnapshot:
        key = (user_ref, session_date)
        portfolio = self._portfolios.get(key)
        if portfolio is None:
            raise KeyError(f"No portfolio for {user_ref} on {session_date}")

        order = fill.order
        previous = self._orders.get(order.id)
        if previous is not None and previous.status != "open":
            raise ValueError(f"Order {order.id} is already {previous.status}")

        # Reservations held by other open orders stay locked
        reserved_cash = sum(
            o.reserved_cash for o in self._orders.values()
            if o.user_ref == user_ref and o.status == "open" and o.id != order.id
        )
        new_cash = portfolio.cash + fill.cash_delta
        if order.side == "buy" and new_cash < reserved_cash - 1e-9:
            raise ValueError(f"Fill would overdraw {user_ref}: cash {new_cash:.2f}")

        delta = fill.quantity if order.side == "buy" else -fill.quantity
        holding = _apply_holding_delta(
            self._holdings[user_ref].get(order.symbol), order.symbol, delta, fill.price,
        )

        # Everything validated -- apply
        self._portfolios[key] = portfolio.model_copy(
            update={"cash": new_cash, "updated_at": datetime.now(timezone.utc)}
        )
        if holding is None:
            self._holdings[user_ref].pop(order.symbol, None)
        else:
            self._holdings[user_ref][order.symbol] = holding
        self._orders[order.id] = order.model_copy(deep=True)
        return await self._snapshot(user_ref, session_date)

    # ------------------------------------------------------------------
    # Portfolios
    # ------------------------------------------------------------------

    async def get_portfolio(self, user_ref: str, session_date: date) -> PortfolioSnapshot | None:
        if (user_ref, session_date) not in self._portfolios:
            return None
        return await self._snapshot(user_ref, session_date)

    async def create_portfolio(self, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        key = (snapshot.user_ref, snapshot.session_date)
        if key not in self._portfolios:
            self._portfolios[key] = snapshot.model_copy(update={"holdings": []})
        return await self._snapshot(*key)

    async def update_portfolio(self, user_ref: str, session_date: date, totals: PortfolioTotals) -> None:
        key = (user_ref, session_date)
        portfolio = self._portfolios.get(key)
        if portfolio is None:
            raise KeyError(f"No portfolio for {user_ref} on {session_date}")
        self._portfolios[key] = portfolio.model_copy(
            update={**totals.model_dump(), "updated_at": datetime.now(timezone.utc)}
        )

    async def list_portfolios(self, user_ref: str) -> list[PortfolioSnapshot]:
        dates = sorted(d for (u, d) in self._portfolios if u == user_ref)
        return [await self._snapshot(user_ref, d) for d in dates]

    async def list_session_portfolios(self, session_date: date) -> list[PortfolioSnapshot]:
        users = sorted(u for (u, d) in self._portfolios if d == session_date)
        return [await self._snapshot(u, session_date) for u in users]

    async def reset_session(self, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        user_ref = snapshot.user_ref
        for order_id, order in list(self._orders.items()):
            if order.user_ref == user_ref and order.status == "open":
                self._orders[order_id] = order.model_copy(update={"status": "cancelled"})
        self._holdings[user_ref] = {}
        self._portfolios[(user_ref, snapshot.session_date)] = snapshot.model_copy(update={"holdings": []})
        return await self._snapshot(user_ref, snapshot.session_date)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _snapshot(self, user_ref: str, session_date: date) -> PortfolioSnapshot:
        portfolio = self._portfolios[(user_ref, session_date)]
        reserved_cash = sum(
            o.reserved_cash for o in self._orders.values()
            if o.user_ref == user_ref and o.status == "open"
        )
        return portfolio.model_copy(update={
            "reserved_cash": reserved_cash,
            "holdings": await self.list_holdings(user_ref),
        })

    def _with_reservation(self, user_ref: str, holding: Holding | None) -> Holding | None:
        if holding is None:
            return None
        reserved = sum(
            o.reserved_quantity for o in self._orders.values()
            if o.user_ref == user_ref and o.status == "open" and o.symbol == holding.symbol
        )
        return holding.model_copy(update={"reserved_quantity": reserved})


def _apply_holding_delta(
    holding: Holding | None,
    symbol: str,
    quantity_delta: int,
    price: float | None,
) -> Holding | None:
    """Return the holding after a quantity change; None when it closes.

    Buys recompute the average cost; sells leave it unchanged.
    """
    if quantity_delta > 0:
        if price is None or price <= 0:
            raise ValueError("A positive holding delta needs a fill price")
        if holding is None:
            return Holding(symbol=symbol, quantity=quantity_delta, average_cost=price)
        return holding.after_buy(quantity_delta, price)

    if quantity_delta < 0:
        current = holding.quantity if holding else 0
        remaining = current + quantity_delta
        if remaining < 0:
            raise ValueError(f"Cannot remove {-quantity_delta} {symbol}: only {current} held")
        if remaining == 0:
            return None
        return holding.model_copy(update={"quantity": remaining, "reserved_quantity": 0})

    return holding
