"""Portfolio tracker -- session snapshots for each user.

A user has one portfolio record per trading session (market-calendar date).
The first read of a session creates it with the configured starting cash.
Holdings and open orders live alongside it in storage.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable

from core.models.portfolio import PortfolioSnapshot
from core.protocols import Storage
from core.time_context import TimeContext

logger = logging.getLogger(__name__)


class PortfolioTracker:
    """Reads and creates PortfolioSnapshots through the Storage protocol."""

    def __init__(
        self,
        storage: Storage,
        time_context: TimeContext,
        starting_cash: float = 10_000.0,
        session_date: Callable[[], date] | None = None,
    ) -> None:
        self._storage = storage
        self._time = time_context
        self._starting_cash = starting_cash
        self._session_date = session_date or (lambda: self._time.now().date())

    @property
    def starting_cash(self) -> float:
        return self._starting_cash

    def current_session(self) -> date:
        return self._session_date()

    # ------------------------------------------------------------------
    # Read portfolio state
    # ------------------------------------------------------------------

    async def get_or_create(self, user_ref: str, session_date: date | None = None) -> PortfolioSnapshot:
        """Return the user's snapshot for the session, creating it on first use."""
        session_date = session_date or self.current_session()
        snapshot = await self._storage.get_portfolio(user_ref, session_date)
        if snapshot is not None:
            return snapshot

        if await self._storage.list_portfolios(user_ref):
            # Sessions are daily games: a new day starts from a clean slate
            return await self.start_session(user_ref, session_date)

        snapshot = await self._storage.create_portfolio(self._fresh(user_ref, session_date))
        logger.info(
            "Portfolio created: %s for %s with $%.2f",
            user_ref, session_date, snapshot.starting_cash,
        )
        return snapshot

    async def history(self, user_ref: str) -> list[PortfolioSnapshot]:
        """All session snapshots, oldest first."""
        return await self._storage.list_portfolios(user_ref)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, user_ref: str, session_date: date | None = None) -> PortfolioSnapshot:
        """Reset the user to a fresh session: open orders cancelled, holdings cleared."""
        session_date = session_date or self.current_session()
        snapshot = await self._storage.reset_session(self._fresh(user_ref, session_date))
        logger.info("Session reset: %s for %s", user_ref, session_date)
        return snapshot

    def _fresh(self, user_ref: str, session_date: date) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            user_ref=user_ref,
            session_date=session_date,
            starting_cash=self._starting_cash,
            cash=self._starting_cash,
            total_value=self._starting_cash,
            updated_at=self._time.now(),
        )
