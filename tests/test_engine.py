"""
MarketEngine facade tests: ticks, events, sessions, warm-up and wiring.
"""

import random

import pytest

from core.data.cache import MemoryCache
from core.data.memory import MemoryStore
from core.models.events import EventTypes
from core.models.orders import Order
from engine.market import MarketEngine, build_registry


def collect(bus, *event_types):
    seen = []

    async def handler(event):
        seen.append(event)

    for event_type in event_types:
        bus.subscribe(event_type, handler)
    return seen


def buy(qty, symbol="X", user="u1", **kw):
    return Order(user_ref=user, symbol=symbol, side="buy", quantity=qty, **kw)


# ── Ticks ───────────────────────────────────────────────────────────────────

class TestTicks:
    @pytest.mark.asyncio
    async def test_generate_all_quotes(self, engine, bus, time_context):
        seen = collect(bus, EventTypes.QUOTES_GENERATED, EventTypes.MARKET_STATE_UPDATED)
        time_context.advance(minutes=2)

        quotes = await engine.generate_all_quotes()

        assert {q.symbol for q in quotes} == set(engine.config.market.symbols)
        assert [e.type for e in seen] == [EventTypes.QUOTES_GENERATED, EventTypes.MARKET_STATE_UPDATED]
        assert len(seen[0].payload["quotes"]) == 6

    @pytest.mark.asyncio
    async def test_tick_fills_resting_orders(self, xy_engine):
        placed = await xy_engine.submit_order(buy(5, kind="limit", limit_price=99.0))
        assert placed.status == "open"

        await xy_engine.seed_price("X", 98.5)
        await xy_engine.seed_price("Y", 100.0)
        await xy_engine.generate_quote("X")

        assert await xy_engine.get_open_orders("u1") == []
        holding = (await xy_engine.portfolio.get_or_create("u1")).holding("X")
        assert holding.quantity == 5
        assert holding.average_cost == pytest.approx(98.5)

    @pytest.mark.asyncio
    async def test_ticks_persisted(self, engine, store, time_context):
        time_context.advance(minutes=2)
        quotes = await engine.generate_all_quotes()
        await engine.drain()

        latest = await store.get_latest_quotes()
        assert {s: q.price for s, q in latest.items()} == {q.symbol: q.price for q in quotes}


# ── Market events and state (scenario D) ────────────────────────────────────

class TestMarketEvents:
    @pytest.mark.asyncio
    async def test_market_wide_event(self, engine, bus):
        seen = collect(bus, EventTypes.MARKET_EVENT_CREATED)

        event = await engine.trigger_event("market_wide")

        assert len(event.affected_symbols) == 6
        assert [e.id for e in engine.get_active_events()] == [event.id]
        assert engine.get_drama_score() > 0
        assert seen[0].payload["id"] == event.id

        state = engine.get_market_state()
        assert [e.id for e in state.active_events] == [event.id]
        assert state.drama_score == pytest.approx(engine.get_drama_score())
        expected = "bullish" if event.impact > 0.05 else "bearish" if event.impact < -0.05 else "neutral"
        assert state.trend == expected

    @pytest.mark.asyncio
    async def test_event_raises_volatility(self, engine, time_context):
        event = await engine.trigger_event("volatility_spike", ["TSLA"])
        time_context.advance(minutes=2)

        quote = await engine.generate_quote("TSLA")

        assert quote.volatility == pytest.approx(0.45 * (1 + 2 * event.magnitude))

    @pytest.mark.asyncio
    async def test_history_and_cleanup(self, engine, time_context):
        await engine.trigger_event("earnings")
        await engine.trigger_event("news")
        assert len(engine.get_event_history()) == 2

        time_context.advance(days=1)
        assert engine.cleanup_events() == 2
        assert engine.get_event_history() == []

    @pytest.mark.asyncio
    async def test_calm_market_state(self, engine):
        state = engine.get_market_state()

        assert state.is_open
        assert state.volatility_regime == "normal"
        assert state.trend == "neutral"
        assert state.drama_score == 0.0


# ── Sessions and performance ────────────────────────────────────────────────

class TestSessions:
    @pytest.mark.asyncio
    async def test_start_session_resets_portfolio(self, xy_engine, bus):
        seen = collect(bus, EventTypes.SESSION_STARTED)
        await xy_engine.submit_order(buy(10))
        await xy_engine.submit_order(buy(5, symbol="Y", kind="limit", limit_price=90.0))

        snapshot = await xy_engine.start_session("u1")

        assert snapshot.cash == pytest.approx(10_000.0)
        assert snapshot.holdings == []
        assert snapshot.reserved_cash == 0.0
        assert await xy_engine.get_open_orders("u1") == []
        assert seen[0].payload["user_ref"] == "u1"

    @pytest.mark.asyncio
    async def test_new_day_starts_fresh(self, xy_engine, time_context):
        await xy_engine.submit_order(buy(10))
        first = await xy_engine.portfolio.get_or_create("u1")

        time_context.advance(days=1)
        second = await xy_engine.portfolio.get_or_create("u1")

        assert second.session_date > first.session_date
        assert second.cash == pytest.approx(10_000.0)
        assert second.holdings == []
        assert len(await xy_engine.portfolio.history("u1")) == 2

    @pytest.mark.asyncio
    async def test_performance(self, xy_engine):
        await xy_engine.submit_order(buy(10))
        await xy_engine.seed_price("X", 110.0)
        await xy_engine.submit_order(Order(user_ref="u1", symbol="X", side="sell", quantity=10))
        await xy_engine.get_portfolio_value("u1")

        metrics = await xy_engine.get_performance("u1")

        assert metrics.total_trades == 2
        assert metrics.profitable_trades == 1
        assert metrics.win_rate == pytest.approx(100.0)
        assert metrics.total_return == pytest.approx(100.0)
        assert metrics.total_return_percent == pytest.approx(1.0)
        assert metrics.average_trade_return == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_portfolio_valued_event(self, xy_engine, bus):
        seen = collect(bus, EventTypes.PORTFOLIO_VALUED)
        await xy_engine.get_portfolio_value("u1")
        assert seen[0].payload == {"user_ref": "u1", "total_value": 10_000.0, "day_change_percent": 0.0}

    @pytest.mark.asyncio
    async def test_session_statistics(self, xy_engine, time_context):
        await xy_engine.submit_order(buy(10, user="u1"))
        await xy_engine.submit_order(buy(10, symbol="Y", user="u2"))
        await xy_engine.portfolio.get_or_create("u3")
        await xy_engine.seed_price("X", 110.0)
        await xy_engine.get_portfolio_value("u1")
        await xy_engine.get_portfolio_value("u2")

        stats = await xy_engine.get_session_statistics()

        assert stats.participant_count == 3
        assert stats.total_trades == 2
        assert stats.total_volume == pytest.approx(2000.0)
        assert stats.average_return == pytest.approx(1.0 / 3)
        assert [p.user_ref for p in stats.top_performers] == ["u1", "u2", "u3"]
        assert stats.top_performers[0].return_percent == pytest.approx(1.0)

        time_context.advance(days=1)
        assert (await xy_engine.get_session_statistics()).participant_count == 0
        assert (await xy_engine.get_session_statistics(stats.session_date)).total_trades == 2


# ── Lifecycle and wiring ────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_warm_up_restores_prices_and_events(self, xy_config, store, time_context):
        first = MarketEngine(xy_config, store, rng=random.Random(1), time_context=time_context)
        time_context.advance(minutes=30)
        await first.generate_all_quotes()
        event = await first.trigger_event("news", ["Y"])
        await first.drain()

        second = MarketEngine(xy_config, store, rng=random.Random(2), time_context=time_context)
        await second.warm_up()

        assert second.prices.prices() == pytest.approx(first.prices.prices())
        assert [e.id for e in second.get_active_events()] == [event.id]

    @pytest.mark.asyncio
    async def test_warm_up_with_broken_storage(self, xy_config, time_context):
        class DownStore(MemoryStore):
            async def get_latest_quotes(self, symbols=None):
                raise ConnectionError("db down")

            async def list_events(self, limit=50):
                raise ConnectionError("db down")

        engine = MarketEngine(xy_config, DownStore(), time_context=time_context)
        await engine.warm_up()

        assert engine.prices.prices() == {"X": 100.0, "Y": 100.0}

    @pytest.mark.asyncio
    async def test_from_config_memory_backends(self, config, time_context):
        engine = MarketEngine.from_config(config, time_context=time_context, rng=random.Random(0))

        assert isinstance(engine.storage, MemoryStore)
        assert isinstance(engine.cache, MemoryCache)
        assert engine.bus is not None
        await engine.close()

    def test_registry_follows_configured_order(self, config):
        config.risk.rules = ["daily_loss", "bogus", "order_value"]
        registry = build_registry(config)
        assert registry.names("risk_rule") == ["daily_loss", "order_value"]

    @pytest.mark.asyncio
    async def test_independent_engines(self, xy_config, time_context):
        a = MarketEngine(xy_config, MemoryStore(), rng=random.Random(5), time_context=time_context.model_copy())
        b = MarketEngine(xy_config, MemoryStore(), rng=random.Random(5), time_context=time_context.model_copy())
        for engine in (a, b):
            for _ in range(10):
                engine.time.advance(minutes=2)
                await engine.generate_all_quotes()

        assert a.prices.prices() == b.prices.prices()
        await a.submit_order(buy(1))
        assert (await b.portfolio.get_or_create("u1")).holdings == []
