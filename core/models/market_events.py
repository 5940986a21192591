"""Market event models -- narrative shocks that perturb simulated prices.

A market event is a tagged union over its ``type``. Each kind has its own
model so that code handling events can dispatch exhaustively on the tag.
Events are frozen once created by the EventGenerator.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

EventKind = Literal["earnings", "news", "sector_rotation", "volatility_spike", "market_wide"]
Sentiment = Literal["bullish", "bearish", "neutral"]

EVENT_KINDS: tuple[EventKind, ...] = (
    "earnings",
    "news",
    "sector_rotation",
    "volatility_spike",
    "market_wide",
)


class MarketEventBase(BaseModel):
    """Fields shared by every market event kind."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"mev_{uuid4().hex[:12]}")
    title: str
    description: str = ""
    affected_symbols: tuple[str, ...] = Field(min_length=1)
    impact: float = Field(ge=-1.0, le=1.0)
    magnitude: float = Field(ge=0.0, le=1.0)
    sentiment: Sentiment = "neutral"
    duration_minutes: float = Field(gt=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def age_minutes(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds() / 60.0

    def is_active(self, now: datetime) -> bool:
        """Active while younger than its duration."""
        return self.age_minutes(now) < self.duration_minutes

    def is_retained(self, now: datetime, retention_factor: float = 2.0) -> bool:
        """Kept in memory (for inspection) until ``retention_factor x duration``."""
        return self.age_minutes(now) < self.duration_minutes * retention_factor

    def decay(self, now: datetime) -> float:
        """Linear recency factor in [0, 1]; 1 at creation, 0 once expired."""
        return max(0.0, 1.0 - self.age_minutes(now) / self.duration_minutes)

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(minutes=self.duration_minutes)

    def affects(self, symbol: str) -> bool:
        return symbol in self.affected_symbols


class EarningsEvent(MarketEventBase):
    type: Literal["earnings"] = "earnings"


class NewsEvent(MarketEventBase):
    type: Literal["news"] = "news"


class SectorRotationEvent(MarketEventBase):
    type: Literal["sector_rotation"] = "sector_rotation"
    sector: str = ""


class VolatilitySpikeEvent(MarketEventBase):
    """Non-directional: impact is always 0, magnitude carries the intensity."""

    type: Literal["volatility_spike"] = "volatility_spike"
    impact: float = Field(default=0.0, ge=0.0, le=0.0)


class MarketWideEvent(MarketEventBase):
    type: Literal["market_wide"] = "market_wide"


MarketEvent = Annotated[
    Union[EarningsEvent, NewsEvent, SectorRotationEvent, VolatilitySpikeEvent, MarketWideEvent],
    Field(discriminator="type"),
]

market_event_adapter: TypeAdapter[MarketEvent] = TypeAdapter(MarketEvent)


def parse_market_event(data: dict) -> MarketEvent:
    """Rebuild a market event of the right kind from its JSON form."""
    return market_event_adapter.validate_python(data)


def sentiment_for(impact: float) -> Sentiment:
    if impact > 0:
        return "bullish"
    if impact < 0:
        return "bearish"
    return "neutral"
