"""Event generator -- produces the narrative market events that move prices.

Each call to ``maybe_generate`` rolls once against the cumulative type
probabilities. A kind that fired within its cooldown window is skipped.
Generated and triggered events are kept in memory for ``retention_factor x
duration`` minutes, and are written to storage as audit records in the
background.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta

from core.config import EventsConfig, SymbolConfig
from core.data.audit import AuditWriter
from core.errors import ValidationError
from core.models.market_events import (
    EVENT_KINDS,
    EarningsEvent,
    EventKind,
    MarketEvent,
    MarketWideEvent,
    NewsEvent,
    SectorRotationEvent,
    VolatilitySpikeEvent,
    sentiment_for,
)
from core.protocols import Storage
from core.time_context import TimeContext
from simulator.templates import TEMPLATES, fill_template

logger = logging.getLogger(__name__)


class EventGenerator:
    """Owns event history, per-kind cooldowns and the drama score.

    Usage:
        generator = EventGenerator(symbols, config.events, rng, time_context)
        event = await generator.maybe_generate()   # None most of the time
        event = await generator.trigger("earnings", ["AAPL"])
    """

    def __init__(
        self,
        symbols: dict[str, SymbolConfig],
        config: EventsConfig,
        rng: random.Random,
        time_context: TimeContext,
        storage: Storage | None = None,
        audit: AuditWriter | None = None,
    ) -> None:
        self._symbols = symbols
        self._config = config
        self._rng = rng
        self._time = time_context
        self._storage = storage
        self._audit = audit or AuditWriter()
        self._history: list[MarketEvent] = []
        self._last_fired: dict[EventKind, datetime] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def maybe_generate(self) -> MarketEvent | None:
        """Roll for a new event. Returns None when nothing fires."""
        async with self._lock:
            kind = self._select_kind()
            if kind is None:
                return None

            now = self._time.now()
            last = self._last_fired.get(kind)
            if last is not None and now - last < timedelta(seconds=self._config.cooldown_seconds):
                logger.debug("Event kind %s is cooling down", kind)
                return None

            event = self._create(kind, None, now)
            self._last_fired[kind] = now
            self._record(event)

        logger.info("Market event: [%s] %s (impact=%+.2f)", event.type, event.title, event.impact)
        return event

    async def trigger(self, kind: str, symbols: list[str] | None = None) -> MarketEvent:
        """Create an event of ``kind`` immediately, bypassing probability and cooldown.

        ``symbols`` overrides the affected symbols; it must be non-empty and
        name configured symbols only.
        """
        if kind not in EVENT_KINDS:
            raise ValidationError(f"Unknown event type '{kind}'")
        if symbols is not None:
            if not symbols:
                raise ValidationError("Affected symbols override must not be empty")
            unknown = [s for s in symbols if s not in self._symbols]
            if unknown:
                raise ValidationError(f"Unknown symbols: {', '.join(unknown)}")

        async with self._lock:
            event = self._create(kind, tuple(symbols) if symbols else None, self._time.now())
            self._record(event)

        logger.info("Triggered market event: [%s] %s", event.type, event.title)
        return event

    def _select_kind(self) -> EventKind | None:
        roll = self._rng.random()
        cumulative = 0.0
        for kind in EVENT_KINDS:
            cumulative += self._config.probabilities.get(kind, 0.0)
            if roll < cumulative:
                return kind
        return None

    def _create(
        self,
        kind: EventKind,
        symbols: tuple[str, ...] | None,
        now: datetime,
    ) -> MarketEvent:
        template = self._rng.choice(TEMPLATES[kind])
        all_symbols = tuple(self._symbols)
        sector = ""

        match kind:
            case "earnings" | "news":
                affected = symbols or (self._rng.choice(all_symbols),)
                impact = self._signed_impact(template.impact_range)
                magnitude = abs(impact)
            case "sector_rotation":
                if symbols:
                    affected = symbols
                    sector = self._symbols[symbols[0]].sector
                else:
                    sectors = sorted({cfg.sector for cfg in self._symbols.values()})
                    sector = self._rng.choice(sectors)
                    affected = tuple(s for s, cfg in self._symbols.items() if cfg.sector == sector)
                impact = self._signed_impact(template.impact_range)
                magnitude = abs(impact)
            case "volatility_spike":
                affected = symbols or all_symbols
                impact = 0.0
                magnitude = self._rng.uniform(*template.impact_range)
            case "market_wide":
                affected = symbols or all_symbols
                impact = self._signed_impact(template.impact_range)
                magnitude = abs(impact)
            case _:
                raise ValidationError(f"Unknown event type '{kind}'")

        lead = self._symbols[affected[0]]
        fields = dict(
            title=fill_template(template.title, lead, impact, self._rng),
            description=fill_template(template.description, lead, impact, self._rng),
            affected_symbols=affected,
            impact=impact,
            magnitude=magnitude,
            sentiment=sentiment_for(impact),
            duration_minutes=template.duration_minutes
            + self._rng.random() * self._config.duration_jitter_minutes,
            created_at=now,
        )

        match kind:
            case "earnings":
                return EarningsEvent(**fields)
            case "news":
                return NewsEvent(**fields)
            case "sector_rotation":
                return SectorRotationEvent(sector=sector, **fields)
            case "volatility_spike":
                return VolatilitySpikeEvent(**fields)
            case "market_wide":
                return MarketWideEvent(**fields)

    def _signed_impact(self, impact_range: tuple[float, float]) -> float:
        low, high = impact_range
        magnitude = low + self._rng.random() * (high - low)
        return -magnitude if self._rng.random() < 0.5 else magnitude

    def _record(self, event: MarketEvent) -> None:
        self._history.append(event)
        if self._storage is not None:
            storage = self._storage
            self._audit.submit(f"insert_event {event.id}", lambda: storage.insert_event(event))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_events(self) -> list[MarketEvent]:
        """Events still moving prices (age < duration)."""
        now = self._time.now()
        return [e for e in self._history if e.is_active(now)]

    def drama_score(self) -> float:
        """0-100 score from the count, magnitude and recency of active events."""
        now = self._time.now()
        active = self.active_events()
        score = 15.0 * len(active)
        score += sum(e.magnitude * 30.0 * e.decay(now) for e in active)
        score += 10.0 * sum(1 for e in active if e.magnitude > 0.5)
        return min(100.0, max(0.0, score))

    def history(self, limit: int = 50) -> list[MarketEvent]:
        """Retained events, newest first."""
        return sorted(self._history, key=lambda e: e.created_at, reverse=True)[:limit]

    def cleanup(self) -> int:
        """Forget events older than ``retention_factor x duration``. Returns the count dropped."""
        now = self._time.now()
        factor = self._config.retention_factor
        kept = [e for e in self._history if e.is_retained(now, factor)]
        dropped = len(self._history) - len(kept)
        self._history = kept
        if dropped:
            logger.debug("Dropped %d expired market events", dropped)
        return dropped

    def load_history(self, events: list[MarketEvent]) -> None:
        """Restore retained events (e.g. from storage after a restart)."""
        now = self._time.now()
        known = {e.id for e in self._history}
        for event in sorted(events, key=lambda e: e.created_at):
            if event.id not in known and event.is_retained(now, self._config.retention_factor):
                self._history.append(event)
