# tests/conftest.py
import random
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.bus import AsyncIOBus
from core.config import AppConfig, MarketConfig, MarketHoursConfig, SymbolConfig
from core.data.cache import MemoryCache
from core.data.memory import MemoryStore
from core.time_context import TimeContext
from engine.market import MarketEngine

# Tuesday 2024-03-05 10:00 America/New_York
MARKET_MORNING = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)


def two_symbol_market() -> MarketConfig:
    """X and Y start at exactly 100.00 and share a correlation group."""
    return MarketConfig(
        symbols={
            "X": SymbolConfig(name="X Corp.", sector="Technology", base_price=100.0, base_volatility=0.25),
            "Y": SymbolConfig(name="Y Inc.", sector="Technology", base_price=100.0, base_volatility=0.30),
        },
        hours=MarketHoursConfig(always_open=True),
    )


@pytest.fixture
def market_config():
    return two_symbol_market()


@pytest.fixture
def config():
    """Reference six-symbol config, market always open, memory backends."""
    cfg = AppConfig(seed=42)
    cfg.market.hours.always_open = True
    cfg.storage.backend = "memory"
    cfg.cache.backend = "memory"
    cfg.logging.audit_events = False
    return cfg


@pytest.fixture
def xy_config():
    cfg = AppConfig(seed=7, market=two_symbol_market())
    cfg.storage.backend = "memory"
    cfg.logging.audit_events = False
    return cfg


@pytest.fixture
def time_context():
    return TimeContext.at(MARKET_MORNING)


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def bus():
    return AsyncIOBus()


@pytest.fixture
def engine(config, store, bus, rng, time_context):
    return MarketEngine(config, store, cache=MemoryCache(), bus=bus, rng=rng, time_context=time_context)


@pytest.fixture
def xy_engine(xy_config, store, bus, time_context):
    return MarketEngine(
        xy_config, store, cache=MemoryCache(), bus=bus,
        rng=random.Random(7), time_context=time_context,
    )
