"""Position valuer -- marks a user's session portfolio to market.

Each holding is priced from the first source that has a quote: the live
simulator state, the ``quote:<SYMBOL>`` cache entry, the latest stored
tick, and finally the holding's average cost. Valuation never fails for
lack of a quote.
"""

from __future__ import annotations

import logging
from typing import Callable

from core.data.audit import AuditWriter
from core.data.cache import NullCache, portfolio_key, quote_key
from core.models.portfolio import PortfolioTotals, PortfolioValue, PositionValue
from core.protocols import Cache, Storage
from core.time_context import TimeContext
from risk.portfolio import PortfolioTracker

logger = logging.getLogger(__name__)


class PositionValuer:
    """Computes PortfolioValue and writes the totals back to storage."""

    def __init__(
        self,
        storage: Storage,
        portfolio: PortfolioTracker,
        time_context: TimeContext,
        price_of: Callable[[str], float | None] = lambda symbol: None,
        cache: Cache | None = None,
        audit: AuditWriter | None = None,
        portfolio_ttl: int = 60,
    ) -> None:
        self._storage = storage
        self._portfolio = portfolio
        self._time = time_context
        self._price_of = price_of
        self._cache = cache or NullCache()
        self._audit = audit or AuditWriter()
        self._portfolio_ttl = portfolio_ttl

    async def value_portfolio(self, user_ref: str, fresh: bool = True) -> PortfolioValue:
        """Mark the user's current session to market.

        With ``fresh=False`` a cached valuation is returned when one exists.
        """
        cache = self._cache
        key = portfolio_key(user_ref)
        if not fresh:
            cached = await self._audit.run_soft(f"cache get {key}", lambda: cache.get(key))
            if cached:
                return PortfolioValue.model_validate(cached)

        snapshot = await self._portfolio.get_or_create(user_ref)
        prices = await self._resolve_prices([h.symbol for h in snapshot.holdings])

        positions: list[PositionValue] = []
        for h in snapshot.holdings:
            price = prices.get(h.symbol, h.average_cost)
            market_value = h.quantity * price
            cost_basis = h.quantity * h.average_cost
            pnl = market_value - cost_basis
            positions.append(PositionValue(
                symbol=h.symbol,
                quantity=h.quantity,
                average_cost=h.average_cost,
                current_price=price,
                market_value=market_value,
                unrealized_pnl=pnl,
                unrealized_pnl_percent=(pnl / cost_basis * 100) if cost_basis else 0.0,
            ))

        holdings_value = sum(p.market_value for p in positions)
        total_value = snapshot.cash + holdings_value
        day_change = total_value - snapshot.starting_cash
        day_change_percent = (day_change / snapshot.starting_cash * 100) if snapshot.starting_cash else 0.0

        value = PortfolioValue(
            user_ref=user_ref,
            session_date=snapshot.session_date,
            total_value=total_value,
            cash_balance=snapshot.cash,
            reserved_cash=snapshot.reserved_cash,
            holdings_value=holdings_value,
            day_change=day_change,
            day_change_percent=day_change_percent,
            starting_cash=snapshot.starting_cash,
            positions=positions,
            valued_at=self._time.now(),
        )

        totals = PortfolioTotals(
            total_value=total_value,
            day_change=day_change,
            day_change_percent=day_change_percent,
        )
        storage = self._storage
        await self._audit.run_soft(
            f"update_portfolio {user_ref}",
            lambda: storage.update_portfolio(user_ref, snapshot.session_date, totals),
        )
        payload = value.model_dump(mode="json")
        await self._audit.run_soft(
            f"cache set {key}",
            lambda: cache.set(key, payload, self._portfolio_ttl),
        )

        logger.debug("Valued %s: $%.2f (%+.2f%%)", user_ref, total_value, day_change_percent)
        return value

    async def _resolve_prices(self, symbols: list[str]) -> dict[str, float]:
        prices: dict[str, float] = {}
        missing: list[str] = []
        for symbol in symbols:
            price = self._price_of(symbol)
            if price is not None:
                prices[symbol] = price
            else:
                missing.append(symbol)

        cache = self._cache
        still_missing: list[str] = []
        for symbol in missing:
            key = quote_key(symbol)
            cached = await self._audit.run_soft(f"cache get {key}", lambda: cache.get(key))
            if cached and cached.get("price"):
                prices[symbol] = float(cached["price"])
            else:
                still_missing.append(symbol)

        if still_missing:
            storage = self._storage
            stored = await self._audit.run_soft(
                "get_latest_quotes",
                lambda: storage.get_latest_quotes(still_missing),
                default={},
            )
            for symbol, quote in stored.items():
                prices[symbol] = quote.price

        unpriced = [s for s in symbols if s not in prices]
        if unpriced:
            logger.debug("No quote for %s, valuing at average cost", ", ".join(unpriced))
        return prices
