"""Price simulator -- geometric Brownian motion with event and sector effects.

One call to ``next_quote`` advances one symbol by the time elapsed since its
last update:

    log return = r*dt + sigma*sqrt(dt)*Z + sector effect + event impact

where sigma is the symbol's base volatility scaled by the active events on
it and by the market-wide volatility regime. The result is clamped by the
circuit breaker and the absolute price bounds, and a bid/ask spread and
volume are derived from the move.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from datetime import datetime, timedelta
from typing import Callable

from core.config import MarketConfig
from core.data.audit import AuditWriter
from core.data.cache import NullCache, quote_key
from core.errors import ValidationError
from core.models.market import PriceState, Quote, VolatilityRegime
from core.models.market_events import MarketEvent
from core.protocols import Cache, Storage
from core.time_context import TimeContext

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365 * 24 * 60 * 60


class PriceSimulator:
    """Owns the per-symbol price table.

    ``active_events``, ``regime`` and ``is_open`` are read-only views
    supplied by the owner, so the simulator never depends on the event
    generator or the state tracker directly.
    """

    def __init__(
        self,
        config: MarketConfig,
        rng: random.Random,
        time_context: TimeContext,
        active_events: Callable[[], list[MarketEvent]] = list,
        regime: Callable[[], VolatilityRegime] = lambda: "normal",
        is_open: Callable[[], bool] = lambda: True,
        storage: Storage | None = None,
        cache: Cache | None = None,
        audit: AuditWriter | None = None,
        quote_ttl: int = 30,
    ) -> None:
        self._config = config
        self._rng = rng
        self._time = time_context
        self._active_events = active_events
        self._regime = regime
        self._is_open = is_open
        self._storage = storage
        self._cache = cache or NullCache()
        self._audit = audit or AuditWriter()
        self._quote_ttl = quote_ttl

        now = self._time.now()
        self._states: dict[str, PriceState] = {
            symbol: PriceState(
                symbol=symbol,
                price=cfg.base_price,
                volatility=min(cfg.base_volatility, config.max_volatility),
                event_volatility=cfg.base_volatility,
                last_update=now,
            )
            for symbol, cfg in config.symbols.items()
        }
        self._locks: dict[str, asyncio.Lock] = {s: asyncio.Lock() for s in config.symbols}

    @property
    def symbols(self) -> list[str]:
        return list(self._states)

    # ------------------------------------------------------------------
    # Price updates
    # ------------------------------------------------------------------

    async def next_quote(self, symbol: str) -> Quote:
        """Advance ``symbol`` by one GBM step and return the new quote."""
        self._require(symbol)
        async with self._locks[symbol]:
            quote = self._step(symbol)

        if self._storage is not None:
            storage = self._storage
            self._audit.submit(f"insert_tick {symbol}", lambda: storage.insert_tick(symbol, quote))
        cache = self._cache
        payload = quote.model_dump(mode="json")
        self._audit.submit(
            f"cache {quote_key(symbol)}",
            lambda: cache.set(quote_key(symbol), payload, self._quote_ttl),
        )
        return quote

    async def generate_all(self) -> dict[str, Quote]:
        """Advance every symbol concurrently."""
        quotes = await asyncio.gather(*(self.next_quote(s) for s in self._states))
        return {q.symbol: q for q in quotes}

    def _step(self, symbol: str) -> Quote:
        cfg = self._config
        state = self._states[symbol]
        now = self._time.now()

        elapsed = (now - state.last_update).total_seconds()
        dt = max(0.0, elapsed) / SECONDS_PER_YEAR

        events = [e for e in self._active_events() if e.affects(symbol)]
        event_volatility = cfg.symbols[symbol].base_volatility
        for event in events:
            event_volatility *= 1 + 2 * event.magnitude
        multiplier = cfg.regime_multipliers.get(self._regime(), 1.0)
        volatility = min(event_volatility * multiplier, cfg.max_volatility)

        drift = cfg.risk_free_rate * dt
        diffusion = volatility * math.sqrt(dt) * self._standard_normal()
        sector_effect = self._sector_effect(symbol, now)
        event_impact = self._event_impact(events, now, dt)

        old_price = state.price
        new_price = self._apply_circuit_breakers(
            old_price, old_price * math.exp(drift + diffusion + sector_effect + event_impact),
        )

        state.price = new_price
        state.volatility = volatility
        state.event_volatility = event_volatility
        state.last_return = math.log(new_price / old_price)
        state.last_update = now

        change = new_price - old_price
        change_percent = change / old_price * 100
        bid, ask = self._spread(new_price, volatility)
        return Quote(
            symbol=symbol,
            price=new_price,
            bid=bid,
            ask=ask,
            change=change,
            change_percent=change_percent,
            volume=self._volume(symbol, abs(change_percent), volatility),
            volatility=volatility,
            timestamp=now,
        )

    def _standard_normal(self) -> float:
        """Box-Muller transform on the injected generator."""
        u1 = 1.0 - self._rng.random()
        u2 = self._rng.random()
        return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)

    def _sector_effect(self, symbol: str, now: datetime) -> float:
        cfg = self._config
        group = cfg.symbols[symbol].correlation_group
        window = timedelta(seconds=cfg.sector_window_seconds)
        peers = [
            self._states[other].last_return
            for other, other_cfg in cfg.symbols.items()
            if other != symbol
            and other_cfg.correlation_group == group
            and now - self._states[other].last_update < window
        ]
        if not peers:
            return 0.0
        effect = cfg.sector_correlation * sum(peers) / len(peers)
        return max(-cfg.sector_effect_cap, min(cfg.sector_effect_cap, effect))

    def _event_impact(self, events: list[MarketEvent], now: datetime, dt: float) -> float:
        cap = self._config.max_event_impact
        total = sum(e.impact * e.decay(now) * dt * 365 for e in events)
        return max(-cap, min(cap, total))

    def _apply_circuit_breakers(self, old_price: float, new_price: float) -> float:
        cfg = self._config
        change = (new_price - old_price) / old_price
        if abs(change) > cfg.max_daily_change:
            direction = 1 if change > 0 else -1
            new_price = old_price * (1 + direction * cfg.max_daily_change)
        return max(cfg.min_price, min(cfg.max_price, new_price))

    def _spread(self, price: float, volatility: float) -> tuple[float, float]:
        cfg = self._config
        spread_bps = cfg.base_spread_bps * (1 + volatility * cfg.volatility_spread_multiplier)
        if not self._is_open():
            spread_bps *= 2
        half = price * spread_bps / 10_000 / 2
        return price - half, price + half

    def _volume(self, symbol: str, abs_change_percent: float, volatility: float) -> int:
        cfg = self._config
        multiplier = 1 + abs_change_percent / 100 * 2 + volatility
        noise = self._rng.uniform(0.5, 1.5)
        return round(cfg.symbols[symbol].base_volume * multiplier * noise * cfg.volume_scale)

    # ------------------------------------------------------------------
    # Reads and admin
    # ------------------------------------------------------------------

    def current_quote(self, symbol: str) -> Quote:
        """Quote for the current state without advancing it."""
        self._require(symbol)
        state = self._states[symbol]
        bid, ask = self._spread(state.price, state.volatility)
        return Quote(
            symbol=symbol,
            price=state.price,
            bid=bid,
            ask=ask,
            volatility=state.volatility,
            timestamp=state.last_update,
        )

    def price(self, symbol: str) -> float | None:
        state = self._states.get(symbol)
        return state.price if state else None

    def prices(self) -> dict[str, float]:
        return {s: state.price for s, state in self._states.items()}

    def states(self) -> list[PriceState]:
        """Copies of every symbol's state."""
        return [state.model_copy() for state in self._states.values()]

    def volatility_snapshot(self) -> dict[str, float]:
        return {s: state.volatility for s, state in self._states.items()}

    async def seed_price(self, symbol: str, price: float) -> None:
        """Override a symbol's price, e.g. when restoring or for admin use."""
        self._require(symbol)
        cfg = self._config
        if not cfg.min_price <= price <= cfg.max_price:
            raise ValidationError(
                f"Price {price} for {symbol} outside [{cfg.min_price}, {cfg.max_price}]"
            )
        async with self._locks[symbol]:
            state = self._states[symbol]
            state.price = price
            state.last_return = 0.0
            state.last_update = self._time.now()

    async def load_state(self, quotes: dict[str, Quote]) -> int:
        """Warm the price table from stored quotes. Returns how many were applied."""
        cfg = self._config
        applied = 0
        for symbol, quote in quotes.items():
            if symbol not in self._states:
                logger.debug("Ignoring stored quote for unconfigured symbol %s", symbol)
                continue
            async with self._locks[symbol]:
                state = self._states[symbol]
                state.price = max(cfg.min_price, min(cfg.max_price, quote.price))
                state.volatility = min(quote.volatility or state.volatility, cfg.max_volatility)
                state.last_update = self._time.now()
            applied += 1
        logger.info("Loaded %d stored prices", applied)
        return applied

    def _require(self, symbol: str) -> None:
        if symbol not in self._states:
            raise ValidationError(f"Unknown symbol '{symbol}'")
