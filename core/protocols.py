"""Core protocols -- the extension points the engine consumes.

The engine imports these protocols. Concrete storage, cache and risk-rule
implementations live in core/data/ and plugins/.

All protocols use Python's structural subtyping (typing.Protocol):
if your class has the right methods, it implements the protocol.
No inheritance required.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Coroutine, Protocol, runtime_checkable

from core.models.events import Event
from core.models.market import Quote
from core.models.market_events import MarketEvent
from core.models.orders import Fill, Order, OrderContext, OrderStatus, RuleEvaluation
from core.models.portfolio import Holding, PortfolioSnapshot, PortfolioTotals


# ---------------------------------------------------------------------------
# 1. EventBus -- inter-component communication
# ---------------------------------------------------------------------------

@runtime_checkable
class EventBus(Protocol):
    """Publish/subscribe event bus.

    Default implementation: AsyncIOBus (in-process pub/sub with JSONL audit).
    """

    async def publish(self, event: Event) -> None:
        """Publish an event to all subscribers of its type."""
        ...

    def subscribe(self, event_type: str, callback: Callable[[Event], Coroutine[Any, Any, None]]) -> None:
        """Register a callback for events of the given type."""
        ...

    def unsubscribe(self, event_type: str, callback: Callable[[Event], Coroutine[Any, Any, None]]) -> None:
        """Remove a previously registered callback."""
        ...


# ---------------------------------------------------------------------------
# 2. Storage -- keyed record store with time-ordered queries
# ---------------------------------------------------------------------------

@runtime_checkable
class Storage(Protocol):
    """Persistent record store for ticks, events, orders and portfolios.

    Tick and event inserts are audit writes: safe to retry, and the engine
    never depends on them succeeding. ``commit_fill``
    changes the order, cash and holding together and must apply all of them
    or none. Reserved cash and shares are derived from open orders whenever
    a portfolio or holding is read.

    Implementations: MemoryStore (in-process), Store (SQLite).
    """

    async def insert_tick(self, symbol: str, quote: Quote) -> None:
        ...

    async def insert_event(self, event: MarketEvent) -> None:
        ...

    async def get_latest_quotes(self, symbols: list[str] | None = None) -> dict[str, Quote]:
        """Most recent stored quote per symbol."""
        ...

    async def list_ticks(self, symbol: str, limit: int = 100) -> list[Quote]:
        """Stored quotes for a symbol, newest first."""
        ...

    async def list_events(self, limit: int = 50) -> list[MarketEvent]:
        """Stored market events, newest first."""
        ...

    async def upsert_holding(
        self,
        user_ref: str,
        symbol: str,
        quantity_delta: int,
        price: float | None = None,
    ) -> Holding | None:
        """Apply a quantity delta to a holding; returns None once it is closed."""
        ...

    async def list_holdings(self, user_ref: str) -> list[Holding]:
        ...

    async def create_order(self, order: Order) -> Order:
        """Store an order. While open, its reserved cash/shares count as locked."""
        ...

    async def get_order(self, order_id: str) -> Order | None:
        ...

    async def list_orders(
        self,
        user_ref: str | None = None,
        status: OrderStatus | None = None,
        symbol: str | None = None,
    ) -> list[Order]:
        """Orders matching the filters, oldest first."""
        ...

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        """Change an open order's status; its reservation stops counting."""
        ...

    async def commit_fill(self, user_ref: str, session_date: date, fill: Fill) -> PortfolioSnapshot:
        """Apply a fill (order record, cash, holding, reservation) atomically."""
        ...

    async def get_portfolio(self, user_ref: str, session_date: date) -> PortfolioSnapshot | None:
        ...

    async def create_portfolio(self, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        ...

    async def update_portfolio(self, user_ref: str, session_date: date, totals: PortfolioTotals) -> None:
        ...

    async def list_portfolios(self, user_ref: str) -> list[PortfolioSnapshot]:
        """All session snapshots for a user, oldest first."""
        ...

    async def list_session_portfolios(self, session_date: date) -> list[PortfolioSnapshot]:
        """Every user's snapshot for one session, ordered by user."""
        ...

    async def reset_session(self, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        """Cancel open orders, clear holdings and store a fresh snapshot."""
        ...


# ---------------------------------------------------------------------------
# 3. Cache -- volatile key/value store, optimization only
# ---------------------------------------------------------------------------

@runtime_checkable
class Cache(Protocol):
    """TTL key/value cache. Every code path must work with a cache that
    always misses.
    """

    @property
    def name(self) -> str:
        ...

    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


# ---------------------------------------------------------------------------
# 4. RiskRule -- evaluate an order against a rule
# ---------------------------------------------------------------------------

@runtime_checkable
class RiskRule(Protocol):
    """A single pre-trade check.

    The Risk Engine runs every registered rule against an order. ALL rules
    must pass for the order to proceed; the first failure decides the
    rejection type.
    """

    @property
    def name(self) -> str:
        """Rule name, e.g. 'order_value', 'cash', 'concentration'."""
        ...

    def evaluate(self, context: OrderContext) -> RuleEvaluation:
        """Evaluate whether the order passes this rule.

        This is intentionally synchronous -- risk rules must be
        deterministic and fast. No I/O.
        """
        ...
