"""Best-effort background writes for audit records and cache updates.

Tick and event records are an audit trail, not a dependency of the next
tick. The AuditWriter schedules each write as its own task with a bounded
timeout; failures and timeouts are logged as StorageUnavailable and
swallowed. ``drain()`` waits for everything still in flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from core.errors import StorageUnavailable

logger = logging.getLogger(__name__)


class AuditWriter:
    """Fire-and-forget runner for soft storage and cache calls."""

    def __init__(self, timeout: float = 2.0) -> None:
        self._timeout = timeout
        self._pending: set[asyncio.Task] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, label: str, call: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Schedule ``call`` in the background. Never raises."""
        task = asyncio.create_task(self._run(label, call))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def run_soft(self, label: str, call: Callable[[], Awaitable[Any]], default: Any = None) -> Any:
        """Await ``call`` with the timeout; on failure log and return ``default``."""
        try:
            return await self._guarded(label, call)
        except StorageUnavailable as exc:
            self.failures += 1
            logger.warning("%s", exc)
            return default

    async def drain(self) -> None:
        """Wait for all pending background writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _run(self, label: str, call: Callable[[], Awaitable[Any]]) -> None:
        await self.run_soft(label, call)

    async def _guarded(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(f"{label} timed out after {self._timeout:.1f}s") from exc
        except Exception as exc:
            raise StorageUnavailable(f"{label} failed: {exc}") from exc
