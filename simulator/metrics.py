"""Performance metrics -- pure Python math, no numpy/pandas required.

Calculates trading performance for one user from their session history
(one PortfolioSnapshot per trading day) and their filled orders, and the
session-wide statistics behind the leaderboard.
"""

from __future__ import annotations

import math
from datetime import date

from core.models.orders import Order
from core.models.portfolio import (
    LeaderboardEntry,
    PerformanceMetrics,
    PortfolioSnapshot,
    SessionStatistics,
)

# Annual risk-free return used by the Sharpe ratio, in percent
RISK_FREE_PERCENT = 2.0

# Leaderboard length
TOP_PERFORMERS = 10


def calculate_metrics(
    sessions: list[PortfolioSnapshot],
    filled_orders: list[Order],
) -> PerformanceMetrics:
    """Calculate performance metrics.

    ``sessions`` must be ordered oldest first. Total return is measured
    against the first session's starting cash; volatility is the sample
    standard deviation of the per-session day change percents.
    """
    if not sessions:
        return PerformanceMetrics()

    initial_capital = sessions[0].starting_cash
    latest = sessions[-1]

    # Each session is a fresh game, so sum the per-session results
    total_return = sum(s.day_change for s in sessions)
    total_return_percent = (total_return / initial_capital * 100) if initial_capital else 0.0

    daily_returns = [s.day_change_percent for s in sessions]
    volatility = _stdev(daily_returns)
    sharpe = _sharpe_ratio(total_return_percent, volatility)
    max_dd = _max_drawdown(_build_equity_curve(sessions, initial_capital))

    sells = [o for o in filled_orders if o.side == "sell" and o.realized_pnl is not None]
    profitable = [o for o in sells if o.realized_pnl > 0]
    win_rate = (len(profitable) / len(sells) * 100) if sells else 0.0
    average_trade_return = _average_trade_return(sells)

    return PerformanceMetrics(
        total_return=total_return,
        total_return_percent=total_return_percent,
        day_change=latest.day_change,
        day_change_percent=latest.day_change_percent,
        win_rate=win_rate,
        total_trades=len(filled_orders),
        profitable_trades=len(profitable),
        average_trade_return=average_trade_return,
        max_drawdown=max_dd,
        sharpe_ratio=sharpe,
        volatility=volatility,
    )


def session_statistics(
    session_date: date,
    portfolios: list[PortfolioSnapshot],
    session_fills: list[Order],
    top: int = TOP_PERFORMERS,
) -> SessionStatistics:
    """Participation, trading volume and the leaderboard for one session.

    ``session_fills`` are the orders filled during the session. Volume is
    the traded notional. Performers rank by day change percent, ties broken
    by user.
    """
    ranked = sorted(portfolios, key=lambda p: (-p.day_change_percent, p.user_ref))
    return SessionStatistics(
        session_date=session_date,
        participant_count=len(portfolios),
        total_trades=len(session_fills),
        total_volume=sum((o.executed_price or 0.0) * o.quantity for o in session_fills),
        average_return=(
            sum(p.day_change_percent for p in portfolios) / len(portfolios) if portfolios else 0.0
        ),
        top_performers=[
            LeaderboardEntry(user_ref=p.user_ref, return_percent=p.day_change_percent, rank=i)
            for i, p in enumerate(ranked[:top], start=1)
        ],
    )


def _build_equity_curve(sessions: list[PortfolioSnapshot], initial_capital: float) -> list[float]:
    """Cumulative equity after each session."""
    curve = [initial_capital]
    equity = initial_capital
    for s in sessions:
        equity += s.day_change
        curve.append(equity)
    return curve


def _average_trade_return(sells: list[Order]) -> float:
    """Mean realized return per closing trade, in percent of its cost basis."""
    returns = []
    for o in sells:
        proceeds = (o.executed_price or 0.0) * o.quantity
        cost = proceeds - (o.realized_pnl or 0.0)
        if cost > 0:
            returns.append(o.realized_pnl / cost * 100)
    return sum(returns) / len(returns) if returns else 0.0


def _sharpe_ratio(total_return_percent: float, volatility: float) -> float:
    if volatility == 0:
        return 0.0
    return (total_return_percent - RISK_FREE_PERCENT) / volatility


def _max_drawdown(equity_curve: list[float]) -> float:
    """Largest peak-to-trough decline, in percent."""
    if not equity_curve:
        return 0.0

    peak = equity_curve[0]
    max_dd = 0.0
    for value in equity_curve:
        if value > peak:
            peak = value
        elif peak > 0:
            max_dd = max(max_dd, (peak - value) / peak * 100)
    return max_dd


def _stdev(values: list[float]) -> float:
    """Calculate standard deviation (sample)."""
    if len(values) < 2:
        return 0.0
    avg = sum(values) / len(values)
    variance = sum((x - avg) ** 2 for x in values) / (len(values) - 1)
    return math.sqrt(variance)
