"""Market models -- per-symbol price state, derived quotes and market state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from core.models.market_events import MarketEvent

VolatilityRegime = Literal["low", "normal", "high", "extreme"]
Trend = Literal["bullish", "bearish", "neutral"]


class PriceState(BaseModel):
    """Mutable simulation state for one symbol.

    ``volatility`` is the effective annualized volatility used by the last
    update; ``event_volatility`` is the same value before the market-wide
    regime multiplier, which is what the regime classification looks at.
    """

    symbol: str
    price: float = Field(gt=0)
    volatility: float = Field(ge=0.0, le=2.0)
    event_volatility: float = Field(default=0.0, ge=0.0)
    last_return: float = 0.0
    last_update: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Quote(BaseModel):
    """A derived market quote. Never stored as engine state."""

    symbol: str
    price: float
    bid: float
    ask: float
    change: float = 0.0
    change_percent: float = 0.0
    volume: int = 0
    volatility: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def spread(self) -> float:
        return self.ask - self.bid


class MarketState(BaseModel):
    """Market-wide aggregate, recomputed after each batch of price updates."""

    is_open: bool = False
    drama_score: float = Field(default=0.0, ge=0.0, le=100.0)
    volatility_regime: VolatilityRegime = "normal"
    trend: Trend = "neutral"
    active_events: list[MarketEvent] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
