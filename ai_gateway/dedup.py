"""
In-flight request deduplication.

Concurrent callers asking for the same key share one upstream call.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict

from .log import get_logger

logger = get_logger(__name__)


class InFlightDeduplicator:
    """
    Maps a key to the task currently computing it.

    A registration is removed as soon as its task settles, whatever the
    outcome, so a failure never leaves a key stuck.
    """

    def __init__(self):
        self._pending: Dict[str, "asyncio.Task[Any]"] = {}

    async def join_or_start(self, key: str, start_fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Await the pending call for key, starting one if none exists.

        All joiners observe the same result or exception. Cancelling one
        waiter does not cancel the shared call.
        """
        task = self._pending.get(key)
        if task is not None:
            logger.debug("dedup_joined", cache_key=key)
            return await asyncio.shield(task)

        async def run() -> Any:
            try:
                return await start_fn()
            finally:
                # Unregister in the same step the call settles
                self._unregister(key, task)

        task = asyncio.ensure_future(run())
        self._pending[key] = task
        task.add_done_callback(lambda t, k=key: self._settle(k, t))

        return await asyncio.shield(task)

    def _unregister(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def _settle(self, key: str, task: "asyncio.Task[Any]") -> None:
        # Covers a task cancelled before run() started
        self._unregister(key, task)
        # Mark the exception retrieved when every waiter has gone away
        if not task.cancelled():
            task.exception()

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)
