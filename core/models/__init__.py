"""Pydantic data models shared across all components."""

from core.models.events import Event, EventTypes
from core.models.market import MarketState, PriceState, Quote
from core.models.market_events import (
    EarningsEvent,
    MarketEvent,
    MarketWideEvent,
    NewsEvent,
    SectorRotationEvent,
    VolatilitySpikeEvent,
)
from core.models.orders import ExecutionResult, Fill, Order, OrderContext, RiskResult, RuleEvaluation
from core.models.portfolio import (
    Holding,
    LeaderboardEntry,
    PerformanceMetrics,
    PortfolioSnapshot,
    PortfolioTotals,
    PortfolioValue,
    PositionValue,
    SessionStatistics,
)

__all__ = [
    "Event",
    "EventTypes",
    "MarketState",
    "PriceState",
    "Quote",
    "MarketEvent",
    "EarningsEvent",
    "NewsEvent",
    "SectorRotationEvent",
    "VolatilitySpikeEvent",
    "MarketWideEvent",
    "Order",
    "Fill",
    "ExecutionResult",
    "OrderContext",
    "RiskResult",
    "RuleEvaluation",
    "Holding",
    "PortfolioSnapshot",
    "PortfolioTotals",
    "PortfolioValue",
    "PositionValue",
    "PerformanceMetrics",
    "LeaderboardEntry",
    "SessionStatistics",
]
