"""Market driver -- asyncio loops that keep the simulated market moving.

Two independent loops:
1. Every ``tick_interval``: advance all prices, recompute market state and
   fill open orders (skipped while the market is closed unless configured)
2. Every ``event_interval``: forget expired events, then roll for a new one

An error in one cycle is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging

from core.config import SchedulerConfig
from core.models.events import Event, EventTypes
from core.models.market import Quote
from core.models.market_events import MarketEvent
from engine.market import MarketEngine

logger = logging.getLogger(__name__)


class MarketDriver:
    """Periodic driver for a MarketEngine.

    Usage:
        driver = MarketDriver(engine, config.scheduler)
        await driver.start()
        ...
        await driver.stop()
    """

    def __init__(self, engine: MarketEngine, config: SchedulerConfig) -> None:
        self._engine = engine
        self._config = config
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the tick and event loops."""
        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop("tick", self.run_tick, self._config.tick_interval_seconds)),
            asyncio.create_task(self._loop("event", self.run_event_cycle, self._config.event_interval_seconds)),
        ]
        logger.info(
            "Market driver started (tick every %s, events every %s)",
            self._config.tick_interval, self._config.event_interval,
        )

    async def stop(self) -> None:
        """Stop both loops and wait for pending audit writes."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self._engine.drain()
        logger.info("Market driver stopped after %d ticks", self.ticks)

    async def _loop(self, name: str, cycle, interval: float) -> None:
        while self._running:
            try:
                await cycle()
            except Exception:
                logger.exception("Error in %s loop", name)
            await asyncio.sleep(interval)

    async def run_tick(self) -> list[Quote]:
        """One price tick. Returns the new quotes, or [] when skipped."""
        engine = self._engine
        if not self._config.tick_when_closed and not engine.state.is_open():
            logger.debug("Market closed, skipping tick")
            return []

        quotes = await engine.generate_all_quotes()
        self.ticks += 1
        state = engine.state.current

        if engine.bus is not None:
            await engine.bus.publish(Event(
                type=EventTypes.TICK_COMPLETED,
                source="market_driver",
                payload={
                    "tick": self.ticks,
                    "symbols": len(quotes),
                    "regime": state.volatility_regime,
                    "trend": state.trend,
                    "drama_score": state.drama_score,
                },
                timestamp=engine.time.now(),
            ))
        logger.debug(
            "Tick %d: %d quotes, regime=%s trend=%s drama=%.0f",
            self.ticks, len(quotes), state.volatility_regime, state.trend, state.drama_score,
        )
        return quotes

    async def run_event_cycle(self) -> MarketEvent | None:
        """Drop expired events, then maybe generate one."""
        self._engine.cleanup_events()
        return await self._engine.maybe_generate_event()
