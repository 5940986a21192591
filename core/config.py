"""Configuration loader -- reads config.yaml + .env, validates with Pydantic.

Resolves ${ENV_VAR} references in YAML values from environment variables.
Every section has defaults matching the reference game setup, so an empty
or missing config file yields a runnable engine.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from core.duration import duration_seconds

logger = logging.getLogger(__name__)

# Default home directory for all state files
DEFAULT_HOME = Path.home() / ".marketarena"


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} references in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{(\w+)\}")
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                logger.warning("Environment variable %s not set", var_name)
                return match.group(0)  # leave unresolved
            return env_value
        return pattern.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Config models (Pydantic)
# ---------------------------------------------------------------------------

class SymbolConfig(BaseModel):
    name: str
    sector: str
    # Correlation group for the sector nudge; defaults to the sector tag
    group: str = ""
    base_price: float = Field(default=100.0, gt=0)
    base_volatility: float = Field(default=0.25, ge=0.0)
    base_volume: int = Field(default=20_000_000, gt=0)

    @property
    def correlation_group(self) -> str:
        return self.group or self.sector


def _default_symbols() -> dict[str, SymbolConfig]:
    return {
        "AAPL": SymbolConfig(name="Apple Inc.", sector="Technology", group="TECH",
                             base_price=175.0, base_volatility=0.25, base_volume=50_000_000),
        "MSFT": SymbolConfig(name="Microsoft Corp.", sector="Technology", group="TECH",
                             base_price=380.0, base_volatility=0.22, base_volume=30_000_000),
        "TSLA": SymbolConfig(name="Tesla Inc.", sector="Electric Vehicles", group="EV_AI",
                             base_price=240.0, base_volatility=0.45, base_volume=80_000_000),
        "NVDA": SymbolConfig(name="NVIDIA Corp.", sector="Semiconductors", group="EV_AI",
                             base_price=450.0, base_volatility=0.35, base_volume=40_000_000),
        "AMZN": SymbolConfig(name="Amazon.com Inc.", sector="E-commerce", group="ECOMMERCE",
                             base_price=145.0, base_volatility=0.28, base_volume=35_000_000),
        "GOOGL": SymbolConfig(name="Alphabet Inc.", sector="Technology", group="TECH",
                              base_price=140.0, base_volatility=0.24, base_volume=25_000_000),
    }


class MarketHoursConfig(BaseModel):
    timezone: str = "America/New_York"
    open: str = "09:30"
    close: str = "16:00"
    always_open: bool = False


class MarketConfig(BaseModel):
    symbols: dict[str, SymbolConfig] = Field(default_factory=_default_symbols)
    risk_free_rate: float = 0.05
    max_daily_change: float = Field(default=0.20, gt=0.0, lt=1.0)
    min_price: float = Field(default=1.0, gt=0.0)
    max_price: float = 10_000.0
    max_volatility: float = 2.0
    base_spread_bps: float = Field(default=5.0, gt=0.0)
    volatility_spread_multiplier: float = 2.0
    volume_scale: float = 0.1
    sector_correlation: float = Field(default=0.3, ge=0.0, le=0.3)
    sector_effect_cap: float = 0.005
    sector_window: str = "60s"
    max_event_impact: float = 0.1
    regime_multipliers: dict[str, float] = Field(default_factory=lambda: {
        "low": 0.7,
        "normal": 1.0,
        "high": 1.5,
        "extreme": 2.5,
    })
    hours: MarketHoursConfig = Field(default_factory=MarketHoursConfig)

    @field_validator("symbols")
    @classmethod
    def _non_empty(cls, value: dict[str, SymbolConfig]) -> dict[str, SymbolConfig]:
        if not value:
            raise ValueError("market.symbols must define at least one symbol")
        return value

    @property
    def sector_window_seconds(self) -> float:
        return duration_seconds(self.sector_window)


class EventsConfig(BaseModel):
    probabilities: dict[str, float] = Field(default_factory=lambda: {
        "earnings": 0.15,
        "news": 0.25,
        "sector_rotation": 0.08,
        "volatility_spike": 0.05,
        "market_wide": 0.03,
    })
    cooldown: str = "5m"
    retention_factor: float = 2.0
    duration_jitter_minutes: float = 60.0

    @property
    def cooldown_seconds(self) -> float:
        return duration_seconds(self.cooldown)


class RiskConfig(BaseModel):
    max_order_value: float = 5_000.0
    min_cash_reserve: float = 100.0
    max_position_size: float = 0.25
    max_daily_loss: float = 0.10
    rules: list[str] = Field(default_factory=lambda: [
        "order_value",
        "cash",
        "shares",
        "concentration",
        "daily_loss",
    ])


class TradingConfig(BaseModel):
    starting_cash: float = Field(default=10_000.0, gt=0)
    storage_timeout: str = "2s"

    @property
    def storage_timeout_seconds(self) -> float:
        return duration_seconds(self.storage_timeout)


class StorageConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "sqlite"
    path: str = ""


class CacheConfig(BaseModel):
    backend: Literal["none", "memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    quote_ttl: int = 30
    portfolio_ttl: int = 60


class SchedulerConfig(BaseModel):
    tick_interval: str = "2m"
    event_interval: str = "5m"
    tick_when_closed: bool = False

    @property
    def tick_interval_seconds(self) -> float:
        return duration_seconds(self.tick_interval)

    @property
    def event_interval_seconds(self) -> float:
        return duration_seconds(self.event_interval)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    audit_events: bool = True


class AppConfig(BaseModel):
    """Top-level application configuration."""

    home_dir: str = str(DEFAULT_HOME)
    seed: int | None = None
    market: MarketConfig = Field(default_factory=MarketConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def home_path(self) -> Path:
        """Resolved home directory as a Path."""
        return Path(self.home_dir).expanduser()

    @property
    def db_path(self) -> Path:
        if self.storage.path:
            return Path(self.storage.path).expanduser()
        return self.home_path / "db.sqlite"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    env_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML + .env files.

    1. Load .env into environment variables
    2. Load config.yaml and resolve ${ENV_VAR} references
    3. Validate against Pydantic models
    4. Create home directory structure if needed
    """
    home = Path(os.environ.get("MARKETARENA_HOME", str(DEFAULT_HOME))).expanduser()

    if env_path is None:
        env_path = home / ".env"
    if config_path is None:
        config_path = home / "config.yaml"

    env_path = Path(env_path)
    config_path = Path(config_path)

    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from %s", env_path)
    else:
        logger.debug("No .env file at %s", env_path)

    raw_config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}
        logger.info("Loaded config from %s", config_path)
    else:
        logger.warning("No config file at %s, using defaults", config_path)

    resolved = _resolve_env_vars(raw_config)

    if "MARKETARENA_HOME" in os.environ:
        resolved["home_dir"] = os.environ["MARKETARENA_HOME"]
    if os.environ.get("MARKETARENA_SEED"):
        resolved["seed"] = int(os.environ["MARKETARENA_SEED"])

    config = AppConfig(**resolved)

    _ensure_directories(config.home_path)

    return config


def _ensure_directories(home: Path) -> None:
    """Create the state directory structure if it doesn't exist."""
    for d in (home, home / "events"):
        d.mkdir(parents=True, exist_ok=True)
