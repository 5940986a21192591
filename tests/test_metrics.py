"""
Performance metrics tests.
"""

from datetime import date

import pytest

from core.models.orders import Order
from core.models.portfolio import PortfolioSnapshot
from simulator.metrics import calculate_metrics, session_statistics


def session(day, change, starting=10_000.0):
    return PortfolioSnapshot(
        user_ref="u1",
        session_date=date(2024, 3, day),
        starting_cash=starting,
        cash=starting + change,
        total_value=starting + change,
        day_change=change,
        day_change_percent=change / starting * 100,
    )


def closed_sell(pnl, price=110.0, qty=10):
    return Order(
        user_ref="u1", symbol="X", side="sell", quantity=qty,
        status="filled", executed_price=price, realized_pnl=pnl,
    )


def filled_buy(price=100.0, qty=10):
    return Order(
        user_ref="u1", symbol="X", side="buy", quantity=qty,
        status="filled", executed_price=price,
    )


class TestCalculateMetrics:
    def test_no_sessions(self):
        metrics = calculate_metrics([], [])
        assert metrics.total_return == 0.0
        assert metrics.total_trades == 0

    def test_single_session(self):
        metrics = calculate_metrics([session(4, 250.0)], [])

        assert metrics.total_return == pytest.approx(250.0)
        assert metrics.total_return_percent == pytest.approx(2.5)
        assert metrics.day_change == pytest.approx(250.0)
        assert metrics.day_change_percent == pytest.approx(2.5)
        assert metrics.volatility == 0.0
        assert metrics.sharpe_ratio == 0.0
        assert metrics.max_drawdown == 0.0

    def test_returns_sum_across_sessions(self):
        sessions = [session(4, 200.0), session(5, -500.0), session(6, 100.0)]
        metrics = calculate_metrics(sessions, [])

        assert metrics.total_return == pytest.approx(-200.0)
        assert metrics.total_return_percent == pytest.approx(-2.0)
        assert metrics.day_change == pytest.approx(100.0)

    def test_drawdown_from_peak(self):
        # Equity: 10000 -> 11000 -> 9900 -> 10400
        sessions = [session(4, 1000.0), session(5, -1100.0), session(6, 500.0)]
        metrics = calculate_metrics(sessions, [])

        assert metrics.max_drawdown == pytest.approx(10.0)

    def test_volatility_and_sharpe(self):
        sessions = [session(4, 100.0), session(5, 300.0)]
        metrics = calculate_metrics(sessions, [])

        # day change percents 1.0 and 3.0: sample stdev sqrt(2)
        assert metrics.volatility == pytest.approx(2 ** 0.5)
        assert metrics.sharpe_ratio == pytest.approx((4.0 - 2.0) / 2 ** 0.5)

    def test_trade_statistics(self):
        orders = [
            filled_buy(),
            filled_buy(),
            closed_sell(100.0),   # cost 1000, +10%
            closed_sell(-50.0),   # cost 1150, about -4.35%
            closed_sell(200.0),   # cost 900, about +22.2%
        ]
        metrics = calculate_metrics([session(4, 250.0)], orders)

        assert metrics.total_trades == 5
        assert metrics.profitable_trades == 2
        assert metrics.win_rate == pytest.approx(2 / 3 * 100)
        expected = (10.0 + (-50.0 / 1150.0 * 100) + (200.0 / 900.0 * 100)) / 3
        assert metrics.average_trade_return == pytest.approx(expected)

    def test_buys_only_have_no_win_rate(self):
        metrics = calculate_metrics([session(4, 0.0)], [filled_buy()])
        assert metrics.win_rate == 0.0
        assert metrics.average_trade_return == 0.0
        assert metrics.total_trades == 1


def player(user, percent):
    return PortfolioSnapshot(
        user_ref=user,
        session_date=date(2024, 3, 5),
        starting_cash=10_000.0,
        cash=10_000.0,
        total_value=10_000.0 * (1 + percent / 100),
        day_change=100.0 * percent,
        day_change_percent=percent,
    )


class TestSessionStatistics:
    def test_empty_session(self):
        stats = session_statistics(date(2024, 3, 5), [], [])
        assert stats.participant_count == 0
        assert stats.average_return == 0.0
        assert stats.top_performers == []

    def test_aggregates(self):
        players = [player("ann", 2.0), player("bob", -1.0), player("cid", 5.0)]
        fills = [filled_buy(price=100.0, qty=10), closed_sell(50.0, price=105.0, qty=10)]

        stats = session_statistics(date(2024, 3, 5), players, fills)

        assert stats.participant_count == 3
        assert stats.total_trades == 2
        assert stats.total_volume == pytest.approx(2050.0)
        assert stats.average_return == pytest.approx(2.0)

    def test_leaderboard_ranks_by_day_change(self):
        players = [player("bob", 1.0), player("ann", 1.0), player("cid", 3.0), player("dan", -2.0)]

        stats = session_statistics(date(2024, 3, 5), players, [], top=3)

        assert [(p.rank, p.user_ref, p.return_percent) for p in stats.top_performers] == [
            (1, "cid", 3.0),
            (2, "ann", 1.0),
            (3, "bob", 1.0),
        ]
