"""Market state tracker -- open flag, volatility regime and trend."""

from __future__ import annotations

import logging
from datetime import datetime, time
from zoneinfo import ZoneInfo

from core.config import MarketHoursConfig
from core.models.market import MarketState, PriceState, Trend, VolatilityRegime
from core.models.market_events import MarketEvent
from core.time_context import TimeContext

logger = logging.getLogger(__name__)

# Upper bounds (exclusive) on mean event volatility for each regime
REGIME_THRESHOLDS: tuple[tuple[float, VolatilityRegime], ...] = (
    (0.15, "low"),
    (0.30, "normal"),
    (0.60, "high"),
)

TREND_THRESHOLD = 0.05


class MarketStateTracker:
    """Holds the latest MarketState and recomputes it after each batch."""

    def __init__(self, hours: MarketHoursConfig, time_context: TimeContext) -> None:
        self._hours = hours
        self._time = time_context
        self._tz = ZoneInfo(hours.timezone)
        self._open = time.fromisoformat(hours.open)
        self._close = time.fromisoformat(hours.close)
        self._state = MarketState(is_open=self.is_open(), updated_at=time_context.now())

    @property
    def current(self) -> MarketState:
        return self._state

    def regime(self) -> VolatilityRegime:
        return self._state.volatility_regime

    def is_open(self, at: datetime | None = None) -> bool:
        """Weekday between the configured open and close, in market time."""
        if self._hours.always_open:
            return True
        local = (at or self._time.now()).astimezone(self._tz)
        if local.weekday() >= 5:
            return False
        return self._open <= local.time() < self._close

    def session_date(self, at: datetime | None = None):
        """The calendar date in the market's timezone."""
        return (at or self._time.now()).astimezone(self._tz).date()

    def recompute(
        self,
        states: list[PriceState],
        active_events: list[MarketEvent],
        drama_score: float,
    ) -> MarketState:
        now = self._time.now()
        regime = classify_regime([s.event_volatility for s in states])
        trend = classify_trend([s.last_return for s in states], active_events, now)

        if regime != self._state.volatility_regime:
            logger.info("Volatility regime %s -> %s", self._state.volatility_regime, regime)

        self._state = MarketState(
            is_open=self.is_open(now),
            drama_score=drama_score,
            volatility_regime=regime,
            trend=trend,
            active_events=list(active_events),
            updated_at=now,
        )
        return self._state


def classify_regime(volatilities: list[float]) -> VolatilityRegime:
    if not volatilities:
        return "normal"
    mean = sum(volatilities) / len(volatilities)
    for bound, regime in REGIME_THRESHOLDS:
        if mean < bound:
            return regime
    return "extreme"


def classify_trend(returns: list[float], events: list[MarketEvent], now: datetime) -> Trend:
    """Mean last return (in percent) plus the decayed impact of active events."""
    score = (sum(returns) / len(returns) * 100) if returns else 0.0
    score += sum(e.impact * e.decay(now) for e in events)
    if score > TREND_THRESHOLD:
        return "bullish"
    if score < -TREND_THRESHOLD:
        return "bearish"
    return "neutral"
