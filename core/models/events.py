"""Event model -- the message format for everything published on the bus."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


class Event(BaseModel):
    """A typed message that flows through the EventBus.

    Engine components publish one of these for every state change
    (quotes generated, market event created, order filled, ...). When the
    bus has an events directory, they are also appended to daily JSONL files.
    """

    id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:12]}")
    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    source: str
    payload: dict = Field(default_factory=dict)
    metadata: dict | None = None


# -- Event type constants --

class EventTypes:
    """Well-known event type strings."""

    # Price simulation
    QUOTES_GENERATED = "market.quotes_generated"
    MARKET_STATE_UPDATED = "market.state_updated"

    # Narrative events
    MARKET_EVENT_CREATED = "market.event_created"

    # Orders
    ORDER_FILLED = "order.filled"
    ORDER_PLACED = "order.placed"
    ORDER_REJECTED = "order.rejected"
    ORDER_CANCELLED = "order.cancelled"

    # Portfolio
    PORTFOLIO_VALUED = "portfolio.valued"
    SESSION_STARTED = "session.started"

    # Driver
    TICK_COMPLETED = "driver.tick_completed"
