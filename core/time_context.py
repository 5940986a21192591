"""TimeContext -- controls what time the engine believes it is.

In production mode, ``now()`` is always the real wall clock.
In simulation mode, time only moves when advanced explicitly, which makes
price paths (elapsed time drives the GBM step), event decay and cooldowns
reproducible in tests and replays.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel, Field


class TimeContext(BaseModel):
    """Clock shared by every engine component."""

    current_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    mode: Literal["production", "simulation"] = "production"
    simulation_id: str | None = None

    @classmethod
    def production(cls) -> TimeContext:
        """Create a production-mode TimeContext following the wall clock."""
        return cls(mode="production")

    @classmethod
    def at(cls, dt: datetime, simulation_id: str = "sim") -> TimeContext:
        """Create a simulation-mode TimeContext frozen at ``dt``."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return cls(current_time=dt, mode="simulation", simulation_id=simulation_id)

    def now(self) -> datetime:
        if self.mode == "production":
            return datetime.now(timezone.utc)
        return self.current_time

    def advance_to(self, dt: datetime) -> None:
        """Move simulated time to ``dt`` (only valid in simulation mode)."""
        if self.mode != "simulation":
            raise RuntimeError("Cannot advance time in production mode")
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        self.current_time = dt

    def advance(self, **delta: float) -> datetime:
        """Advance simulated time by timedelta arguments, e.g. ``advance(minutes=2)``."""
        self.advance_to(self.current_time + timedelta(**delta))
        return self.current_time

    @property
    def is_simulation(self) -> bool:
        return self.mode == "simulation"
