"""Portfolio models -- holdings, session snapshots and valuations."""

from __future__ import annotations

from datetime import date, datetime, timezone

from pydantic import BaseModel, Field


class Holding(BaseModel):
    """An open long position. Removed from storage when quantity reaches 0."""

    symbol: str
    quantity: int = Field(gt=0)
    average_cost: float = Field(gt=0)
    reserved_quantity: int = Field(default=0, ge=0)

    @property
    def available_quantity(self) -> int:
        """Shares not locked by open sell limit orders."""
        return self.quantity - self.reserved_quantity

    def after_buy(self, quantity: int, price: float) -> Holding:
        """Return the holding after buying ``quantity`` at ``price``.

        Average cost is the quantity-weighted mean of the old position and
        the new fill.
        """
        total = self.quantity + quantity
        average_cost = (self.quantity * self.average_cost + quantity * price) / total
        return self.model_copy(update={"quantity": total, "average_cost": average_cost})


class PortfolioSnapshot(BaseModel):
    """One trading session's portfolio record for one user.

    ``cash`` is the settled balance; ``reserved_cash`` is the part of it
    locked by open buy limit orders.
    """

    user_ref: str
    session_date: date
    starting_cash: float
    cash: float
    reserved_cash: float = 0.0
    total_value: float = 0.0
    day_change: float = 0.0
    day_change_percent: float = 0.0
    holdings: list[Holding] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def available_cash(self) -> float:
        return self.cash - self.reserved_cash

    def holding(self, symbol: str) -> Holding | None:
        for h in self.holdings:
            if h.symbol == symbol:
                return h
        return None


class PortfolioTotals(BaseModel):
    """Recomputed totals written back to a session's portfolio record."""

    total_value: float
    day_change: float
    day_change_percent: float


class PositionValue(BaseModel):
    """Mark-to-market view of one holding."""

    symbol: str
    quantity: int
    average_cost: float
    current_price: float
    market_value: float
    unrealized_pnl: float
    unrealized_pnl_percent: float


class PortfolioValue(BaseModel):
    """Mark-to-market valuation of a user's session portfolio."""

    user_ref: str
    session_date: date
    total_value: float
    cash_balance: float
    reserved_cash: float = 0.0
    holdings_value: float
    day_change: float
    day_change_percent: float
    starting_cash: float
    positions: list[PositionValue] = Field(default_factory=list)
    valued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PerformanceMetrics(BaseModel):
    """Trading performance across all of a user's sessions."""

    total_return: float = 0.0
    total_return_percent: float = 0.0
    day_change: float = 0.0
    day_change_percent: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    profitable_trades: int = 0
    average_trade_return: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    volatility: float = 0.0


class LeaderboardEntry(BaseModel):
    """One ranked participant of a session."""

    user_ref: str
    return_percent: float
    rank: int = Field(ge=1)


class SessionStatistics(BaseModel):
    """Aggregates for one trading session across every participant."""

    session_date: date
    participant_count: int = 0
    total_trades: int = 0
    total_volume: float = 0.0
    average_return: float = 0.0
    top_performers: list[LeaderboardEntry] = Field(default_factory=list)
