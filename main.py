"""MarketArena entrypoint -- wires the market engine and runs the driver.

Usage:
    python main.py
    python main.py --config /path/to/config.yaml
    python main.py --ticks 30 --seed 7     # run 30 ticks back to back and exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random

from core.config import load_config
from core.time_context import TimeContext
from engine.market import MarketEngine
from scheduler.runner import MarketDriver


def setup_logging(level: str) -> None:
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Quiet down noisy libraries
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MarketArena market simulation engine")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to config.yaml (default: ~/.marketarena/config.yaml)",
    )
    parser.add_argument(
        "--env",
        type=str,
        default=None,
        help="Path to .env file (default: ~/.marketarena/.env)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the random source (overrides config)",
    )
    parser.add_argument(
        "--ticks",
        type=int,
        default=None,
        help="Run this many ticks immediately and exit instead of running the driver",
    )
    return parser.parse_args(argv)


async def run_batch(engine: MarketEngine, ticks: int) -> None:
    """Run ``ticks`` back-to-back ticks in simulated time, one tick interval apart."""
    logger = logging.getLogger("marketarena")
    interval = engine.config.scheduler.tick_interval_seconds
    for _ in range(ticks):
        engine.time.advance(seconds=interval)
        engine.cleanup_events()
        await engine.maybe_generate_event()
        await engine.generate_all_quotes()

    state = engine.get_market_state()
    for symbol, price in engine.prices.prices().items():
        logger.info("%-6s %10.2f", symbol, price)
    logger.info(
        "After %d ticks: regime=%s trend=%s drama=%.0f active_events=%d",
        ticks, state.volatility_regime, state.trend, state.drama_score, len(state.active_events),
    )


async def run(
    config_path: str | None = None,
    env_path: str | None = None,
    seed: int | None = None,
    ticks: int | None = None,
) -> None:
    """Main async entry point."""
    config = load_config(config_path, env_path)
    if seed is not None:
        config.seed = seed
    setup_logging(config.logging.level)
    logger = logging.getLogger("marketarena")

    time_context = TimeContext.at(TimeContext.production().now()) if ticks else None
    engine = MarketEngine.from_config(
        config,
        time_context=time_context,
        rng=random.Random(config.seed),
    )
    logger.info("Plugin registry: %s", engine.registry.summary())
    await engine.warm_up()

    if ticks:
        try:
            await run_batch(engine, ticks)
        finally:
            await engine.close()
        return

    driver = MarketDriver(engine, config.scheduler)
    await driver.start()
    logger.info("MarketArena running. Press Ctrl+C to stop.")

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        await driver.stop()
        await engine.close()


def main() -> None:
    args = parse_args()
    try:
        asyncio.run(run(config_path=args.config, env_path=args.env, seed=args.seed, ticks=args.ticks))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
