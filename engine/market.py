"""MarketEngine -- the explicit, constructible facade over the whole simulation.

Owns the symbol table, the random source and the clock, wires the price
simulator, event generator, state tracker, order engine and valuer
together, and exposes the outward operations the API layer consumes.
Nothing here is a module-level singleton: tests build as many independent
engines as they like, each with its own seed.

Usage:
    engine = MarketEngine.from_config(load_config())
    await engine.warm_up()
    quotes = await engine.generate_all_quotes()
    result = await engine.submit_order(Order(user_ref="u1", symbol="AAPL", side="buy", quantity=5))
"""

from __future__ import annotations

import inspect
import logging
import random
from datetime import date

from core.bus import AsyncIOBus
from core.config import AppConfig
from core.data.audit import AuditWriter
from core.data.cache import MemoryCache, NullCache, portfolio_key
from core.data.memory import MemoryStore
from core.data.store import Store
from core.models.events import Event, EventTypes
from core.models.market import MarketState, Quote
from core.models.market_events import MarketEvent
from core.models.orders import ExecutionResult, Order
from core.models.portfolio import PerformanceMetrics, PortfolioSnapshot, PortfolioValue, SessionStatistics
from core.protocols import Cache, EventBus, Storage
from core.registry import PluginRegistry
from core.time_context import TimeContext
from engine.orders import OrderEngine
from engine.valuation import PositionValuer
from risk.engine import RiskEngine
from risk.portfolio import PortfolioTracker
from simulator.events import EventGenerator
from simulator.metrics import calculate_metrics, session_statistics
from simulator.prices import PriceSimulator
from simulator.state import MarketStateTracker

logger = logging.getLogger(__name__)


class MarketEngine:
    """One self-contained market: prices, events, orders and portfolios."""

    def __init__(
        self,
        config: AppConfig,
        storage: Storage,
        cache: Cache | None = None,
        bus: EventBus | None = None,
        rng: random.Random | None = None,
        time_context: TimeContext | None = None,
        registry: PluginRegistry | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.cache = cache or NullCache()
        self.bus = bus
        self.rng = rng or random.Random(config.seed)
        self.time = time_context or TimeContext.production()
        self.registry = registry or build_registry(config)
        self.audit = AuditWriter(timeout=config.trading.storage_timeout_seconds)

        market = config.market
        self.state = MarketStateTracker(market.hours, self.time)
        self.events = EventGenerator(
            market.symbols, config.events, self.rng, self.time,
            storage=storage, audit=self.audit,
        )
        self.prices = PriceSimulator(
            market,
            self.rng,
            self.time,
            active_events=self.events.active_events,
            regime=self.state.regime,
            is_open=self.state.is_open,
            storage=storage,
            cache=self.cache,
            audit=self.audit,
            quote_ttl=config.cache.quote_ttl,
        )
        self.portfolio = PortfolioTracker(
            storage, self.time,
            starting_cash=config.trading.starting_cash,
            session_date=self.state.session_date,
        )
        self.risk = RiskEngine(self.registry)
        self.orders = OrderEngine(
            storage,
            self.portfolio,
            self.risk,
            self.prices.price,
            market.symbols,
            self.time,
            bus=bus,
            cache=self.cache,
            audit=self.audit,
            storage_timeout=config.trading.storage_timeout_seconds,
        )
        self.valuer = PositionValuer(
            storage,
            self.portfolio,
            self.time,
            price_of=self.prices.price,
            cache=self.cache,
            audit=self.audit,
            portfolio_ttl=config.cache.portfolio_ttl,
        )

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        time_context: TimeContext | None = None,
        rng: random.Random | None = None,
    ) -> MarketEngine:
        """Build storage, cache and bus from config and wire an engine around them."""
        events_dir = config.home_path / "events" if config.logging.audit_events else None
        return cls(
            config,
            storage=build_storage(config),
            cache=build_cache(config),
            bus=AsyncIOBus(events_dir=events_dir),
            rng=rng,
            time_context=time_context,
        )

    # ------------------------------------------------------------------
    # Market
    # ------------------------------------------------------------------

    def get_market_state(self) -> MarketState:
        return self.state.recompute(
            self.prices.states(),
            self.events.active_events(),
            self.events.drama_score(),
        )

    async def generate_quote(self, symbol: str) -> Quote:
        """Advance one symbol and fill any open orders its new price satisfies."""
        quote = await self.prices.next_quote(symbol)
        await self.orders.process_open_orders({symbol: quote.price})
        return quote

    async def generate_all_quotes(self) -> list[Quote]:
        """One tick: advance every symbol, recompute market state, process open orders."""
        quotes = await self.prices.generate_all()
        state = self.get_market_state()
        await self.orders.process_open_orders({s: q.price for s, q in quotes.items()})

        await self._publish(EventTypes.QUOTES_GENERATED, {
            "quotes": [q.model_dump(mode="json") for q in quotes.values()],
        })
        await self._publish(EventTypes.MARKET_STATE_UPDATED, state.model_dump(mode="json"))
        return list(quotes.values())

    async def seed_price(self, symbol: str, price: float) -> Quote:
        await self.prices.seed_price(symbol, price)
        return self.prices.current_quote(symbol)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def maybe_generate_event(self) -> MarketEvent | None:
        event = await self.events.maybe_generate()
        if event is not None:
            await self._publish(EventTypes.MARKET_EVENT_CREATED, event.model_dump(mode="json"))
        return event

    async def trigger_event(self, kind: str, symbols: list[str] | None = None) -> MarketEvent:
        """Force an event. Raises ValidationError for an unknown kind or symbols."""
        event = await self.events.trigger(kind, symbols)
        await self._publish(EventTypes.MARKET_EVENT_CREATED, event.model_dump(mode="json"))
        return event

    def get_active_events(self) -> list[MarketEvent]:
        return self.events.active_events()

    def get_event_history(self, limit: int = 50) -> list[MarketEvent]:
        return self.events.history(limit)

    def get_drama_score(self) -> float:
        return self.events.drama_score()

    def cleanup_events(self) -> int:
        return self.events.cleanup()

    # ------------------------------------------------------------------
    # Orders and portfolios
    # ------------------------------------------------------------------

    async def submit_order(self, order: Order) -> ExecutionResult:
        return await self.orders.execute(order)

    async def cancel_order(self, order_id: str, user_ref: str) -> ExecutionResult:
        return await self.orders.cancel(order_id, user_ref)

    async def get_open_orders(self, user_ref: str) -> list[Order]:
        return await self.orders.open_orders(user_ref)

    async def get_portfolio_value(self, user_ref: str, fresh: bool = True) -> PortfolioValue:
        value = await self.valuer.value_portfolio(user_ref, fresh=fresh)
        await self._publish(EventTypes.PORTFOLIO_VALUED, {
            "user_ref": user_ref,
            "total_value": value.total_value,
            "day_change_percent": value.day_change_percent,
        })
        return value

    async def get_performance(self, user_ref: str) -> PerformanceMetrics:
        sessions = await self.portfolio.history(user_ref)
        filled = await self.storage.list_orders(user_ref=user_ref, status="filled")
        return calculate_metrics(sessions, filled)

    async def get_session_statistics(self, session_date: date | None = None) -> SessionStatistics:
        """Participation, volume and leaderboard for a session (default: today's)."""
        session_date = session_date or self.state.session_date()
        portfolios = await self.storage.list_session_portfolios(session_date)
        participants = {p.user_ref for p in portfolios}
        fills = [
            o for o in await self.storage.list_orders(status="filled")
            if o.user_ref in participants
            and o.filled_at is not None
            and self.state.session_date(o.filled_at) == session_date
        ]
        return session_statistics(session_date, portfolios, fills)

    async def start_session(self, user_ref: str) -> PortfolioSnapshot:
        snapshot = await self.portfolio.start_session(user_ref)
        cache = self.cache
        await self.audit.run_soft(
            f"cache delete {portfolio_key(user_ref)}",
            lambda: cache.delete(portfolio_key(user_ref)),
        )
        await self._publish(EventTypes.SESSION_STARTED, snapshot.model_dump(mode="json"))
        return snapshot

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def warm_up(self) -> None:
        """Restore prices and retained events from storage. Best-effort."""
        storage = self.storage
        quotes = await self.audit.run_soft(
            "get_latest_quotes",
            lambda: storage.get_latest_quotes(list(self.config.market.symbols)),
            default={},
        )
        await self.prices.load_state(quotes)

        events = await self.audit.run_soft("list_events", lambda: storage.list_events(200), default=[])
        self.events.load_history(events)

        state = self.get_market_state()
        logger.info(
            "Market warmed up: %d symbols, %d active events, regime=%s, open=%s",
            len(self.prices.symbols), len(state.active_events), state.volatility_regime, state.is_open,
        )

    async def drain(self) -> None:
        """Wait for background audit and cache writes."""
        await self.audit.drain()

    async def close(self) -> None:
        await self.drain()
        for resource in (self.cache, self.storage):
            close = getattr(resource, "close", None)
            if close is None:
                continue
            result = close()
            if inspect.isawaitable(result):
                await result

    async def _publish(self, event_type: str, payload: dict) -> None:
        if self.bus is None:
            return
        await self.bus.publish(Event(
            type=event_type,
            source="market_engine",
            payload=payload,
            timestamp=self.time.now(),
        ))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_registry(config: AppConfig) -> PluginRegistry:
    """Register the risk rules named in ``config.risk.rules``, in that order."""
    from plugins.risk_rules import (
        CashRule,
        ConcentrationRule,
        DailyLossRule,
        OrderValueRule,
        SharesRule,
    )

    risk = config.risk
    factories = {
        "order_value": lambda: OrderValueRule(max_order_value=risk.max_order_value),
        "cash": lambda: CashRule(min_cash_reserve=risk.min_cash_reserve),
        "shares": lambda: SharesRule(),
        "concentration": lambda: ConcentrationRule(max_position_size=risk.max_position_size),
        "daily_loss": lambda: DailyLossRule(max_daily_loss=risk.max_daily_loss),
    }

    registry = PluginRegistry()
    for name in risk.rules:
        factory = factories.get(name)
        if factory is None:
            logger.error("Unknown risk rule '%s' in config, skipping", name)
            continue
        registry.register("risk_rule", factory())
    logger.info("Loaded %d risk rules", len(registry.names("risk_rule")))
    return registry


def build_storage(config: AppConfig) -> Storage:
    if config.storage.backend == "memory":
        logger.info("Using in-memory storage")
        return MemoryStore()
    return Store(config.db_path)


def build_cache(config: AppConfig) -> Cache:
    backend = config.cache.backend
    if backend == "redis":
        from plugins.cache.redis_cache import RedisCache
        logger.info("Using Redis cache at %s", config.cache.redis_url)
        return RedisCache(config.cache.redis_url)
    if backend == "memory":
        return MemoryCache()
    return NullCache()
