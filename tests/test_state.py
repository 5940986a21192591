"""
Market state tests: trading hours, volatility regimes and trend.
"""

from datetime import datetime, timezone

import pytest

from core.config import MarketHoursConfig
from core.models.market import PriceState
from core.models.market_events import MarketWideEvent
from core.time_context import TimeContext
from simulator.state import MarketStateTracker, classify_regime, classify_trend

NY_HOURS = MarketHoursConfig(timezone="America/New_York", open="09:30", close="16:00")


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def state(symbol="X", event_volatility=0.25, last_return=0.0):
    return PriceState(
        symbol=symbol,
        price=100.0,
        volatility=min(event_volatility, 2.0),
        event_volatility=event_volatility,
        last_return=last_return,
    )


# ── Trading hours ───────────────────────────────────────────────────────────

class TestHours:
    @pytest.mark.parametrize("moment, expected", [
        (utc(2024, 3, 5, 15, 0), True),      # Tue 10:00 ET
        (utc(2024, 3, 5, 14, 30), True),     # Tue 09:30 ET, opening bell
        (utc(2024, 3, 5, 14, 29), False),    # Tue 09:29 ET
        (utc(2024, 3, 5, 21, 0), False),     # Tue 16:00 ET, closing bell
        (utc(2024, 3, 5, 20, 59), True),     # Tue 15:59 ET
        (utc(2024, 3, 9, 15, 0), False),     # Saturday
        (utc(2024, 3, 10, 15, 0), False),    # Sunday
        (utc(2024, 7, 10, 13, 45), True),    # Wed 09:45 EDT
    ])
    def test_is_open(self, moment, expected):
        tracker = MarketStateTracker(NY_HOURS, TimeContext.at(moment))
        assert tracker.is_open() is expected

    def test_always_open(self):
        hours = MarketHoursConfig(always_open=True)
        tracker = MarketStateTracker(hours, TimeContext.at(utc(2024, 3, 9, 3, 0)))
        assert tracker.is_open()

    def test_session_date_uses_market_timezone(self):
        # 01:00 UTC Wednesday is still Tuesday evening in New York
        tracker = MarketStateTracker(NY_HOURS, TimeContext.at(utc(2024, 3, 6, 1, 0)))
        assert tracker.session_date().isoformat() == "2024-03-05"

    def test_is_open_at_explicit_time(self):
        tracker = MarketStateTracker(NY_HOURS, TimeContext.at(utc(2024, 3, 9, 15, 0)))
        assert tracker.is_open(utc(2024, 3, 5, 15, 0))


# ── Regime ──────────────────────────────────────────────────────────────────

class TestRegime:
    @pytest.mark.parametrize("vols, expected", [
        ([0.10, 0.12], "low"),
        ([0.15], "normal"),
        ([0.25, 0.30], "normal"),
        ([0.30], "high"),
        ([0.50, 0.55], "high"),
        ([0.60], "extreme"),
        ([1.2, 0.9], "extreme"),
        ([], "normal"),
    ])
    def test_classify_regime(self, vols, expected):
        assert classify_regime(vols) == expected


# ── Trend ───────────────────────────────────────────────────────────────────

class TestTrend:
    def test_flat_market_is_neutral(self):
        now = utc(2024, 3, 5, 15, 0)
        assert classify_trend([0.0, 0.0], [], now) == "neutral"

    def test_returns_drive_trend(self):
        now = utc(2024, 3, 5, 15, 0)
        # 0.1% mean return scores 0.1
        assert classify_trend([0.001, 0.001], [], now) == "bullish"
        assert classify_trend([-0.001, -0.001], [], now) == "bearish"
        assert classify_trend([0.0004], [], now) == "neutral"

    def test_event_impact_drives_trend(self):
        now = utc(2024, 3, 5, 15, 0)
        event = MarketWideEvent(
            title="t", affected_symbols=("X",), impact=-0.4, magnitude=0.4,
            duration_minutes=60, created_at=now,
        )
        assert classify_trend([0.0], [event], now) == "bearish"


# ── Recompute ───────────────────────────────────────────────────────────────

class TestRecompute:
    def test_recompute_builds_state(self, time_context):
        tracker = MarketStateTracker(MarketHoursConfig(always_open=True), time_context)
        result = tracker.recompute(
            [state("X", 0.7, 0.002), state("Y", 0.8, 0.002)],
            [],
            42.0,
        )

        assert result.is_open
        assert result.volatility_regime == "extreme"
        assert result.trend == "bullish"
        assert result.drama_score == 42.0
        assert tracker.current is result
        assert tracker.regime() == "extreme"

    def test_starts_normal(self, time_context):
        tracker = MarketStateTracker(NY_HOURS, time_context)
        assert tracker.regime() == "normal"
        assert tracker.current.is_open
