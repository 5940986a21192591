"""Order engine -- validates, fills, rests and cancels user orders.

Market orders, and limit orders the current quote already satisfies, fill
immediately at the current quote price. Other limit orders rest as ``open``
and reserve what they need: buy limits reserve ``limit x quantity`` of cash
and sell limits reserve their shares. ``process_open_orders`` re-checks
resting orders against fresh prices, oldest first.

Every fill is a single ``Storage.commit_fill`` call. Storage calls in the
order path are bounded by the storage timeout; a timeout or storage error is
a TransactionFailure and nothing is applied. Orders for one user are
serialized by a per-user lock.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Awaitable, Callable, Collection

from core.data.audit import AuditWriter
from core.data.cache import NullCache, portfolio_key
from core.errors import OrderRejected, TransactionFailure, ValidationError
from core.models.events import Event, EventTypes
from core.models.orders import ExecutionResult, Fill, Order, OrderContext
from core.models.portfolio import Holding
from core.protocols import Cache, EventBus, Storage
from core.time_context import TimeContext
from risk.engine import RiskEngine
from risk.portfolio import PortfolioTracker

logger = logging.getLogger(__name__)


class OrderEngine:
    """Executes orders against the Storage protocol.

    Usage:
        engine = OrderEngine(storage, portfolio, risk, simulator.price, symbols, time_context)
        result = await engine.execute(Order(user_ref="u1", symbol="AAPL", side="buy", quantity=10))
    """

    def __init__(
        self,
        storage: Storage,
        portfolio: PortfolioTracker,
        risk: RiskEngine,
        price_of: Callable[[str], float | None],
        symbols: Collection[str],
        time_context: TimeContext,
        bus: EventBus | None = None,
        cache: Cache | None = None,
        audit: AuditWriter | None = None,
        storage_timeout: float = 2.0,
    ) -> None:
        self._storage = storage
        self._portfolio = portfolio
        self._risk = risk
        self._price_of = price_of
        self._symbols = set(symbols)
        self._time = time_context
        self._bus = bus
        self._cache = cache or NullCache()
        self._audit = audit or AuditWriter()
        self._timeout = storage_timeout
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def locked_users(self) -> int:
        """Users with an order in flight or waiting for their lock."""
        return len(self._user_locks)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def execute(self, order: Order) -> ExecutionResult:
        """Validate and execute one order. Rejections come back as results, never raised."""
        async with self._locked(order.user_ref):
            try:
                return await self._execute(order)
            except (OrderRejected, TransactionFailure) as exc:
                return await self._failed(order, exc)

    async def _execute(self, order: Order) -> ExecutionResult:
        self._validate(order)
        price = self._price_of(order.symbol)
        if price is None:
            raise ValidationError(f"No quote available for {order.symbol}")

        portfolio = await self._transact(
            "get_portfolio", lambda: self._portfolio.get_or_create(order.user_ref),
        )
        holding = portfolio.holding(order.symbol)
        marketable = order.is_marketable(price)
        unit = price if marketable or order.limit_price is None else order.limit_price

        context = OrderContext(
            order=order,
            quote_price=price,
            notional=order.quantity * unit,
            portfolio=portfolio,
            holding=holding,
            holdings_value=self._holdings_value(portfolio.holdings),
        )
        self._risk.check(context)

        if marketable:
            return await self._fill(order, price, portfolio.session_date, holding)
        return await self._rest(order)

    def _validate(self, order: Order) -> None:
        if order.quantity <= 0:
            raise ValidationError(f"Quantity must be a positive whole number, got {order.quantity}")
        if order.symbol not in self._symbols:
            raise ValidationError(f"Unknown symbol '{order.symbol}'")
        if order.status != "open":
            raise ValidationError(f"New orders must be open, got {order.status}")
        if order.kind == "limit" and (order.limit_price is None or order.limit_price <= 0):
            raise ValidationError("Limit orders need a positive limit price")

    def _holdings_value(self, holdings: list[Holding]) -> float:
        total = 0.0
        for h in holdings:
            price = self._price_of(h.symbol)
            total += h.quantity * (price if price is not None else h.average_cost)
        return total

    async def _rest(self, order: Order) -> ExecutionResult:
        """Store a limit order as open, reserving its cash or shares."""
        if order.side == "buy":
            resting = order.model_copy(update={"reserved_cash": order.quantity * order.limit_price})
        else:
            resting = order.model_copy(update={"reserved_quantity": order.quantity})

        await self._transact("create_order", lambda: self._storage.create_order(resting))
        await self._invalidate(order.user_ref)

        logger.info(
            "Order OPEN: %s %d %s @ limit %.2f (%s)",
            order.side.upper(), order.quantity, order.symbol, order.limit_price, order.id,
        )
        await self._publish(EventTypes.ORDER_PLACED, resting.model_dump(mode="json"))
        return ExecutionResult(
            success=True,
            order_id=order.id,
            status="open",
            executed_quantity=0,
            remaining_quantity=order.quantity,
            timestamp=self._time.now(),
        )

    async def _fill(
        self,
        order: Order,
        price: float,
        session_date: date,
        holding: Holding | None,
    ) -> ExecutionResult:
        realized_pnl = None
        if order.side == "sell" and holding is not None:
            realized_pnl = (price - holding.average_cost) * order.quantity

        now = self._time.now()
        filled = order.model_copy(update={
            "status": "filled",
            "filled_at": now,
            "executed_price": price,
            "realized_pnl": realized_pnl,
            "reserved_cash": 0.0,
            "reserved_quantity": 0,
        })
        fill = Fill(order=filled, quantity=order.quantity, price=price)

        await self._transact(
            "commit_fill",
            lambda: self._storage.commit_fill(order.user_ref, session_date, fill),
        )
        await self._invalidate(order.user_ref)

        logger.info(
            "Order FILLED: %s %d %s @ %.2f (%s)",
            order.side.upper(), order.quantity, order.symbol, price, order.id,
        )
        await self._publish(EventTypes.ORDER_FILLED, filled.model_dump(mode="json"))
        return ExecutionResult(
            success=True,
            order_id=order.id,
            status="filled",
            executed_price=price,
            executed_quantity=order.quantity,
            remaining_quantity=0,
            timestamp=now,
        )

    # ------------------------------------------------------------------
    # Resting orders
    # ------------------------------------------------------------------

    async def process_open_orders(self, price_map: dict[str, float]) -> list[ExecutionResult]:
        """Fill every open limit order the new prices satisfy, oldest first."""
        results: list[ExecutionResult] = []
        storage = self._storage
        candidates = await self._audit.run_soft(
            "list open orders", lambda: storage.list_orders(status="open"), default=[],
        )

        for candidate in candidates:
            price = price_map.get(candidate.symbol)
            if price is None or not candidate.is_marketable(price):
                continue

            async with self._locked(candidate.user_ref):
                try:
                    order = await self._transact("get_order", lambda: storage.get_order(candidate.id))
                    if order is None or order.status != "open":
                        continue
                    portfolio = await self._transact(
                        "get_portfolio", lambda: self._portfolio.get_or_create(order.user_ref),
                    )
                    result = await self._fill(
                        order, price, portfolio.session_date, portfolio.holding(order.symbol),
                    )
                except TransactionFailure as exc:
                    logger.warning("Could not fill open order %s: %s", candidate.id, exc)
                    result = await self._failed(candidate, exc)
            results.append(result)

        if results:
            logger.info("Processed %d open order(s)", len(results))
        return results

    async def cancel(self, order_id: str, user_ref: str) -> ExecutionResult:
        """Cancel one of the user's open orders, releasing its reservation."""
        async with self._locked(user_ref):
            try:
                order = await self._transact("get_order", lambda: self._storage.get_order(order_id))
            except TransactionFailure as exc:
                return await self._failed(
                    Order(id=order_id, user_ref=user_ref, symbol="", side="buy", quantity=0),
                    exc,
                    publish=False,
                )
            if order is None or order.user_ref != user_ref:
                return await self._failed(
                    Order(id=order_id, user_ref=user_ref, symbol="", side="buy", quantity=0),
                    ValidationError(f"Order {order_id} not found"),
                    publish=False,
                )
            if order.status != "open":
                return await self._failed(
                    order,
                    ValidationError(f"Order {order_id} is {order.status}; only open orders can be cancelled"),
                    publish=False,
                )

            try:
                cancelled = await self._transact(
                    "cancel_order",
                    lambda: self._storage.update_order_status(order_id, "cancelled"),
                )
            except TransactionFailure as exc:
                return await self._failed(order, exc, publish=False)

            await self._invalidate(user_ref)

        logger.info("Order CANCELLED: %s", order_id)
        await self._publish(EventTypes.ORDER_CANCELLED, cancelled.model_dump(mode="json"))
        return ExecutionResult(
            success=True,
            order_id=order_id,
            status="cancelled",
            executed_quantity=0,
            remaining_quantity=order.quantity,
            timestamp=self._time.now(),
        )

    async def open_orders(self, user_ref: str) -> list[Order]:
        return await self._storage.list_orders(user_ref=user_ref, status="open")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, user_ref: str) -> AsyncIterator[None]:
        """Hold the user's order lock; the lock is dropped once nobody uses it."""
        lock = self._user_locks.setdefault(user_ref, asyncio.Lock())
        self._lock_users[user_ref] = self._lock_users.get(user_ref, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_ref] -= 1
            if not self._lock_users[user_ref]:
                del self._lock_users[user_ref]
                del self._user_locks[user_ref]

    async def _transact(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a storage call in the order path; any failure becomes TransactionFailure."""
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("%s timed out after %.1fs", label, self._timeout)
            raise TransactionFailure(f"{label} timed out; order not executed") from exc
        except Exception as exc:
            logger.exception("%s failed", label)
            raise TransactionFailure(f"{label} failed: {exc}") from exc

    async def _failed(
        self,
        order: Order,
        exc: OrderRejected | TransactionFailure,
        publish: bool = True,
    ) -> ExecutionResult:
        reason = exc.reason if isinstance(exc, OrderRejected) else str(exc)
        if publish:
            await self._publish(EventTypes.ORDER_REJECTED, {
                "order": order.model_dump(mode="json"),
                "error": reason,
                "error_code": exc.code,
            })
        return ExecutionResult(
            success=False,
            order_id=order.id,
            error=reason,
            error_code=exc.code,
            timestamp=self._time.now(),
        )

    async def _invalidate(self, user_ref: str) -> None:
        cache = self._cache
        await self._audit.run_soft(
            f"cache delete {portfolio_key(user_ref)}",
            lambda: cache.delete(portfolio_key(user_ref)),
        )

    async def _publish(self, event_type: str, payload: dict) -> None:
        if self._bus is None:
            return
        await self._bus.publish(Event(
            type=event_type,
            source="order_engine",
            payload=payload,
            timestamp=self._time.now(),
        ))
