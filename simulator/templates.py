"""Narrative templates for generated market events.

Each event kind has one or more templates with an impact range (absolute
value) and a base duration in minutes. Placeholders in ``{braces}`` are
filled from the affected company and a few word lists.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from core.config import SymbolConfig
from core.models.market_events import EventKind


@dataclass(frozen=True)
class EventTemplate:
    title: str
    description: str
    impact_range: tuple[float, float]
    duration_minutes: float


TEMPLATES: dict[EventKind, tuple[EventTemplate, ...]] = {
    "earnings": (
        EventTemplate(
            "{company} Reports {sentiment} Earnings",
            "{company} announced {metric} results for the quarter, {impact} analyst expectations.",
            (0.3, 0.8), 30,
        ),
        EventTemplate(
            "{company} Guidance {direction}",
            "{company} {direction} guidance for next quarter, citing {reason}.",
            (0.2, 0.6), 45,
        ),
    ),
    "news": (
        EventTemplate(
            "{company} Announces {announcement}",
            "Breaking: {company} has announced {details}, potentially {impact} the stock.",
            (0.1, 0.5), 60,
        ),
        EventTemplate(
            "Analyst {action} {company}",
            "Major investment firm {action} {company} stock, setting price target at {target}.",
            (0.2, 0.4), 120,
        ),
    ),
    "sector_rotation": (
        EventTemplate(
            "{sector} Sector Sees {direction} Movement",
            "Investors are {action} {sector} stocks amid {reason}.",
            (0.2, 0.6), 180,
        ),
    ),
    "volatility_spike": (
        EventTemplate(
            "Market Volatility Spikes on {reason}",
            "Trading volumes surge as {reason} creates uncertainty in the market.",
            (0.4, 0.9), 90,
        ),
    ),
    "market_wide": (
        EventTemplate(
            "{event} Impacts Broader Market",
            "{event} is causing widespread {sentiment} across major indices.",
            (0.3, 0.7), 240,
        ),
    ),
}

POSITIVE_METRICS = ("better-than-expected", "record-breaking", "impressive", "solid")
NEGATIVE_METRICS = ("below-expectations", "disappointing", "concerning", "weak")

ANNOUNCEMENTS = (
    "new product launch",
    "strategic partnership",
    "major acquisition",
    "expansion plans",
    "technology breakthrough",
    "leadership change",
)

REASONS = (
    "changing market conditions",
    "regulatory developments",
    "economic uncertainty",
    "technological shifts",
    "competitive pressures",
    "supply chain concerns",
)

DETAILS = (
    "a significant strategic initiative",
    "plans to expand market presence",
    "investment in new technologies",
    "restructuring operations",
    "entering new markets",
    "strengthening competitive position",
)

MARKET_EVENTS = (
    "Federal Reserve policy announcement",
    "geopolitical tensions",
    "economic data release",
    "trade negotiations",
    "inflation concerns",
    "employment report",
)


def fill_template(text: str, company: SymbolConfig, impact: float, rng: random.Random) -> str:
    """Substitute placeholders using the lead affected company."""
    positive = impact > 0
    replacements = {
        "{company}": company.name,
        "{sector}": company.sector,
        "{sentiment}": "Strong" if positive else "Disappointing",
        "{direction}": "Raises" if positive else "Lowers",
        "{action}": "buying into" if positive else "rotating out of",
        "{impact}": "boosting" if positive else "pressuring",
        "{metric}": rng.choice(POSITIVE_METRICS if positive else NEGATIVE_METRICS),
        "{announcement}": rng.choice(ANNOUNCEMENTS),
        "{reason}": rng.choice(REASONS),
        "{details}": rng.choice(DETAILS),
        "{target}": f"${rng.random() * 100 + 100:.0f}",
        "{event}": rng.choice(MARKET_EVENTS),
    }
    for placeholder, value in replacements.items():
        text = text.replace(placeholder, value)
    return text
