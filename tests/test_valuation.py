"""
Position valuer tests: mark-to-market, price fallbacks and the portfolio cache.
"""

import pytest

from core.data.cache import MemoryCache, NullCache, portfolio_key, quote_key
from core.models.market import Quote
from core.models.orders import Order
from engine.valuation import PositionValuer


async def buy_x(engine, qty=10):
    result = await engine.submit_order(Order(user_ref="u1", symbol="X", side="buy", quantity=qty))
    assert result.success
    return result


# ── Mark to market ──────────────────────────────────────────────────────────

class TestValuePortfolio:
    @pytest.mark.asyncio
    async def test_new_user_is_all_cash(self, xy_engine):
        value = await xy_engine.get_portfolio_value("newbie")

        assert value.total_value == pytest.approx(10_000.0)
        assert value.cash_balance == pytest.approx(10_000.0)
        assert value.holdings_value == 0.0
        assert value.day_change == 0.0
        assert value.positions == []

    @pytest.mark.asyncio
    async def test_marks_holdings_to_current_price(self, xy_engine):
        await buy_x(xy_engine)
        await xy_engine.seed_price("X", 110.0)

        value = await xy_engine.get_portfolio_value("u1")

        assert value.cash_balance == pytest.approx(9_000.0)
        assert value.holdings_value == pytest.approx(1_100.0)
        assert value.total_value == pytest.approx(10_100.0)
        assert value.day_change == pytest.approx(100.0)
        assert value.day_change_percent == pytest.approx(1.0)

        (position,) = value.positions
        assert position.current_price == pytest.approx(110.0)
        assert position.unrealized_pnl == pytest.approx(100.0)
        assert position.unrealized_pnl_percent == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_totals_written_back(self, xy_engine, store):
        await buy_x(xy_engine)
        await xy_engine.seed_price("X", 90.0)

        value = await xy_engine.get_portfolio_value("u1")
        saved = await store.get_portfolio("u1", value.session_date)

        assert saved.total_value == pytest.approx(9_900.0)
        assert saved.day_change == pytest.approx(-100.0)
        assert saved.day_change_percent == pytest.approx(-1.0)

    @pytest.mark.asyncio
    async def test_reserved_cash_reported(self, xy_engine):
        await xy_engine.submit_order(Order(
            user_ref="u1", symbol="Y", side="buy", kind="limit", quantity=10, limit_price=95.0,
        ))
        value = await xy_engine.get_portfolio_value("u1")

        assert value.reserved_cash == pytest.approx(950.0)
        assert value.total_value == pytest.approx(10_000.0)


# ── Price fallbacks ─────────────────────────────────────────────────────────

class TestPriceFallback:
    def _valuer(self, engine, store, time_context, cache=None):
        return PositionValuer(
            store, engine.portfolio, time_context,
            price_of=lambda symbol: None,
            cache=cache or NullCache(),
        )

    @pytest.mark.asyncio
    async def test_falls_back_to_average_cost(self, xy_engine, store, time_context):
        await buy_x(xy_engine)
        valuer = self._valuer(xy_engine, store, time_context)

        value = await valuer.value_portfolio("u1")

        assert value.positions[0].current_price == pytest.approx(100.0)
        assert value.total_value == pytest.approx(10_000.0)

    @pytest.mark.asyncio
    async def test_uses_cached_quote(self, xy_engine, store, time_context):
        await buy_x(xy_engine)
        cache = MemoryCache()
        await cache.set(quote_key("X"), {"symbol": "X", "price": 120.0}, 30)
        valuer = self._valuer(xy_engine, store, time_context, cache=cache)

        value = await valuer.value_portfolio("u1")

        assert value.positions[0].current_price == pytest.approx(120.0)

    @pytest.mark.asyncio
    async def test_uses_stored_tick(self, xy_engine, store, time_context):
        await buy_x(xy_engine)
        await store.insert_tick("X", Quote(symbol="X", price=130.0, bid=129.9, ask=130.1))
        valuer = self._valuer(xy_engine, store, time_context)

        value = await valuer.value_portfolio("u1")

        assert value.positions[0].current_price == pytest.approx(130.0)


# ── Portfolio cache ─────────────────────────────────────────────────────────

class TestPortfolioCache:
    @pytest.mark.asyncio
    async def test_cached_value_served_when_not_fresh(self, xy_engine):
        await buy_x(xy_engine)
        first = await xy_engine.get_portfolio_value("u1")
        await xy_engine.seed_price("X", 150.0)

        cached = await xy_engine.get_portfolio_value("u1", fresh=False)
        fresh = await xy_engine.get_portfolio_value("u1", fresh=True)

        assert cached.total_value == pytest.approx(first.total_value)
        assert fresh.total_value == pytest.approx(9_000.0 + 1_500.0)

    @pytest.mark.asyncio
    async def test_fill_invalidates_cached_value(self, xy_engine):
        await xy_engine.get_portfolio_value("u1")
        assert await xy_engine.cache.get(portfolio_key("u1")) is not None

        await buy_x(xy_engine)

        assert await xy_engine.cache.get(portfolio_key("u1")) is None
        value = await xy_engine.get_portfolio_value("u1", fresh=False)
        assert value.cash_balance == pytest.approx(9_000.0)

    @pytest.mark.asyncio
    async def test_broken_cache_does_not_fail_valuation(self, xy_engine, store, time_context):
        class BrokenCache(NullCache):
            async def get(self, key):
                raise ConnectionError("redis down")

            async def set(self, key, value, ttl_seconds):
                raise ConnectionError("redis down")

        await buy_x(xy_engine)
        valuer = PositionValuer(
            store, xy_engine.portfolio, time_context,
            price_of=xy_engine.prices.price, cache=BrokenCache(),
        )

        value = await valuer.value_portfolio("u1", fresh=False)

        assert value.total_value == pytest.approx(10_000.0)
