"""
Storage tests, run against both the SQLite Store and the MemoryStore.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from core.data.memory import MemoryStore
from core.data.store import Store
from core.models.market import Quote
from core.models.market_events import EarningsEvent, MarketWideEvent
from core.models.orders import Fill, Order
from core.models.portfolio import PortfolioSnapshot, PortfolioTotals

DAY = date(2024, 3, 5)
T0 = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["sqlite", "memory"])
def storage(request, tmp_path):
    if request.param == "memory":
        yield MemoryStore()
        return
    store = Store(tmp_path / "db.sqlite")
    yield store
    store.close()


def fresh(user="u1", day=DAY, cash=10_000.0):
    return PortfolioSnapshot(user_ref=user, session_date=day, starting_cash=cash, cash=cash, total_value=cash)


def quote(symbol, price, minute=0):
    return Quote(
        symbol=symbol, price=price, bid=price - 0.05, ask=price + 0.05,
        timestamp=T0 + timedelta(minutes=minute),
    )


def filled(order, price):
    done = order.model_copy(update={
        "status": "filled",
        "filled_at": T0,
        "executed_price": price,
        "reserved_cash": 0.0,
        "reserved_quantity": 0,
    })
    return Fill(order=done, quantity=order.quantity, price=price)


async def market_fill(storage, side, qty, price, symbol="X", user="u1"):
    order = Order(user_ref=user, symbol=symbol, side=side, quantity=qty)
    return await storage.commit_fill(user, DAY, filled(order, price))


# ── Ticks and events ────────────────────────────────────────────────────────

class TestAuditRecords:
    @pytest.mark.asyncio
    async def test_latest_quote_per_symbol(self, storage):
        await storage.insert_tick("X", quote("X", 100.0, 0))
        await storage.insert_tick("X", quote("X", 101.0, 1))
        await storage.insert_tick("Y", quote("Y", 50.0, 0))

        latest = await storage.get_latest_quotes()
        assert {s: q.price for s, q in latest.items()} == {"X": 101.0, "Y": 50.0}

        only_x = await storage.get_latest_quotes(["X", "Z"])
        assert list(only_x) == ["X"]
        assert await storage.get_latest_quotes([]) == {}

    @pytest.mark.asyncio
    async def test_list_ticks_newest_first(self, storage):
        for minute, price in enumerate((100.0, 101.0, 102.0)):
            await storage.insert_tick("X", quote("X", price, minute))

        ticks = await storage.list_ticks("X", limit=2)
        assert [t.price for t in ticks] == [102.0, 101.0]

    @pytest.mark.asyncio
    async def test_events_round_trip_their_kind(self, storage):
        older = EarningsEvent(
            title="X beats", affected_symbols=("X",), impact=0.4, magnitude=0.4,
            sentiment="bullish", duration_minutes=45, created_at=T0,
        )
        newer = MarketWideEvent(
            title="Fed", affected_symbols=("X", "Y"), impact=-0.3, magnitude=0.3,
            sentiment="bearish", duration_minutes=240, created_at=T0 + timedelta(minutes=5),
        )
        await storage.insert_event(older)
        await storage.insert_event(newer)

        events = await storage.list_events()

        assert [e.id for e in events] == [newer.id, older.id]
        assert isinstance(events[0], MarketWideEvent)
        assert events[1] == older


# ── Orders ──────────────────────────────────────────────────────────────────

class TestOrders:
    @pytest.mark.asyncio
    async def test_create_and_get(self, storage):
        order = Order(user_ref="u1", symbol="X", side="buy", kind="limit", quantity=5,
                      limit_price=90.0, reserved_cash=450.0, created_at=T0)
        await storage.create_order(order)

        assert await storage.get_order(order.id) == order
        assert await storage.get_order("missing") is None

    @pytest.mark.asyncio
    async def test_list_filters_and_orders_by_age(self, storage):
        a = Order(user_ref="u1", symbol="X", side="buy", quantity=1, created_at=T0 + timedelta(seconds=2))
        b = Order(user_ref="u1", symbol="Y", side="buy", quantity=1, created_at=T0)
        c = Order(user_ref="u2", symbol="X", side="buy", quantity=1, created_at=T0 + timedelta(seconds=1))
        for order in (a, b, c):
            await storage.create_order(order)

        assert [o.id for o in await storage.list_orders()] == [b.id, c.id, a.id]
        assert [o.id for o in await storage.list_orders(user_ref="u1")] == [b.id, a.id]
        assert [o.id for o in await storage.list_orders(symbol="X")] == [c.id, a.id]

    @pytest.mark.asyncio
    async def test_update_status_only_from_open(self, storage):
        order = Order(user_ref="u1", symbol="X", side="buy", quantity=1)
        await storage.create_order(order)

        cancelled = await storage.update_order_status(order.id, "cancelled")
        assert cancelled.status == "cancelled"

        with pytest.raises(ValueError):
            await storage.update_order_status(order.id, "cancelled")
        with pytest.raises(KeyError):
            await storage.update_order_status("missing", "cancelled")


# ── Portfolios and fills ────────────────────────────────────────────────────

class TestPortfolios:
    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, storage):
        await storage.create_portfolio(fresh())
        again = await storage.create_portfolio(fresh(cash=1.0))

        assert again.cash == 10_000.0
        assert len(await storage.list_portfolios("u1")) == 1
        assert await storage.get_portfolio("u1", date(2024, 3, 6)) is None

    @pytest.mark.asyncio
    async def test_buy_then_sell(self, storage):
        await storage.create_portfolio(fresh())

        after_buy = await market_fill(storage, "buy", 10, 100.0)
        assert after_buy.cash == pytest.approx(9_000.0)
        assert after_buy.holding("X").quantity == 10

        await market_fill(storage, "buy", 10, 120.0)
        after_sell = await market_fill(storage, "sell", 5, 130.0)

        holding = after_sell.holding("X")
        assert after_sell.cash == pytest.approx(10_000.0 - 1_000.0 - 1_200.0 + 650.0)
        assert holding.quantity == 15
        assert holding.average_cost == pytest.approx(110.0)

        closed = await market_fill(storage, "sell", 15, 100.0)
        assert closed.holdings == []

    @pytest.mark.asyncio
    async def test_reservations_follow_open_orders(self, storage):
        await storage.create_portfolio(fresh())
        await market_fill(storage, "buy", 10, 100.0)

        buy_limit = Order(user_ref="u1", symbol="Y", side="buy", kind="limit", quantity=4,
                          limit_price=50.0, reserved_cash=200.0)
        sell_limit = Order(user_ref="u1", symbol="X", side="sell", kind="limit", quantity=6,
                           limit_price=150.0, reserved_quantity=6)
        await storage.create_order(buy_limit)
        await storage.create_order(sell_limit)

        snap = await storage.get_portfolio("u1", DAY)
        assert snap.reserved_cash == pytest.approx(200.0)
        assert snap.holding("X").reserved_quantity == 6

        await storage.update_order_status(sell_limit.id, "cancelled")
        await storage.commit_fill("u1", DAY, filled(buy_limit, 48.0))

        snap = await storage.get_portfolio("u1", DAY)
        assert snap.reserved_cash == 0.0
        assert snap.holding("X").reserved_quantity == 0
        assert snap.cash == pytest.approx(9_000.0 - 192.0)
        assert (await storage.get_order(buy_limit.id)).status == "filled"

    @pytest.mark.asyncio
    async def test_failed_fill_changes_nothing(self, storage):
        await storage.create_portfolio(fresh())
        await market_fill(storage, "buy", 10, 100.0)
        before = await storage.get_portfolio("u1", DAY)

        with pytest.raises(ValueError):
            await market_fill(storage, "sell", 11, 100.0)

        after = await storage.get_portfolio("u1", DAY)
        assert after.cash == before.cash
        assert after.holdings == before.holdings
        assert len(await storage.list_orders(status="filled")) == 1

    @pytest.mark.asyncio
    async def test_fill_cannot_spend_reserved_cash(self, storage):
        await storage.create_portfolio(fresh(cash=1_000.0))
        reserve = Order(user_ref="u1", symbol="Y", side="buy", kind="limit", quantity=9,
                        limit_price=100.0, reserved_cash=900.0)
        await storage.create_order(reserve)

        with pytest.raises(ValueError):
            await market_fill(storage, "buy", 2, 100.0)

        snap = await storage.get_portfolio("u1", DAY)
        assert snap.cash == pytest.approx(1_000.0)
        assert snap.holdings == []

    @pytest.mark.asyncio
    async def test_fill_rejected_twice(self, storage):
        await storage.create_portfolio(fresh())
        order = Order(user_ref="u1", symbol="X", side="buy", quantity=1)
        await storage.commit_fill("u1", DAY, filled(order, 100.0))

        with pytest.raises(ValueError):
            await storage.commit_fill("u1", DAY, filled(order, 100.0))
        assert (await storage.get_portfolio("u1", DAY)).cash == pytest.approx(9_900.0)

    @pytest.mark.asyncio
    async def test_fill_without_portfolio(self, storage):
        with pytest.raises(KeyError):
            await market_fill(storage, "buy", 1, 100.0)

    @pytest.mark.asyncio
    async def test_list_session_portfolios(self, storage):
        await storage.create_portfolio(fresh(user="u2"))
        await storage.create_portfolio(fresh(user="u1"))
        await storage.create_portfolio(fresh(user="u1", day=date(2024, 3, 6)))

        session = await storage.list_session_portfolios(DAY)

        assert [(p.user_ref, p.session_date) for p in session] == [("u1", DAY), ("u2", DAY)]
        assert await storage.list_session_portfolios(date(2024, 3, 7)) == []

    @pytest.mark.asyncio
    async def test_update_totals(self, storage):
        await storage.create_portfolio(fresh())
        await storage.update_portfolio(
            "u1", DAY, PortfolioTotals(total_value=10_250.0, day_change=250.0, day_change_percent=2.5),
        )

        snap = await storage.get_portfolio("u1", DAY)
        assert snap.total_value == 10_250.0
        assert snap.day_change_percent == 2.5

        with pytest.raises(KeyError):
            await storage.update_portfolio(
                "u1", date(2024, 3, 6),
                PortfolioTotals(total_value=0.0, day_change=0.0, day_change_percent=0.0),
            )

    @pytest.mark.asyncio
    async def test_reset_session(self, storage):
        await storage.create_portfolio(fresh())
        await market_fill(storage, "buy", 10, 100.0)
        resting = Order(user_ref="u1", symbol="Y", side="buy", kind="limit", quantity=2,
                        limit_price=50.0, reserved_cash=100.0)
        await storage.create_order(resting)

        snap = await storage.reset_session(fresh(day=date(2024, 3, 6)))

        assert snap.session_date == date(2024, 3, 6)
        assert snap.cash == 10_000.0
        assert snap.holdings == []
        assert snap.reserved_cash == 0.0
        assert (await storage.get_order(resting.id)).status == "cancelled"
        assert [p.session_date for p in await storage.list_portfolios("u1")] == [DAY, date(2024, 3, 6)]

    @pytest.mark.asyncio
    async def test_upsert_holding(self, storage):
        held = await storage.upsert_holding("u1", "X", 4, 25.0)
        assert held.quantity == 4

        held = await storage.upsert_holding("u1", "X", -1)
        assert held.quantity == 3
        assert held.average_cost == 25.0

        assert await storage.upsert_holding("u1", "X", -3) is None
        assert await storage.list_holdings("u1") == []

        with pytest.raises(ValueError):
            await storage.upsert_holding("u1", "X", -1)
