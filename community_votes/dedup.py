"""
Collapse concurrent identical requests into a single in-flight call.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    """
    Registry of in-flight calls keyed like the read cache.

    The first caller for a key starts ``producer``; every caller arriving
    while it runs awaits the same task and observes the same value or the
    same exception. The key is released before the outcome is delivered,
    so a caller arriving afterwards always triggers a fresh call.

    Check-then-register happens without an ``await`` in between, which is
    what makes it atomic on a single event loop.
    """

    def __init__(self):
        self._pending: Dict[str, asyncio.Task] = {}

    async def with_dedup(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._invoke(key, producer))
            task.add_done_callback(_retrieve_exception)
            self._pending[key] = task
        else:
            logger.debug(f"Joining in-flight request: {key}")
        # Shielded: a caller going away must not cancel the shared call
        return await asyncio.shield(task)

    async def _invoke(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        try:
            return await producer()
        finally:
            self._pending.pop(key, None)

    def in_flight(self) -> int:
        return len(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending


def _retrieve_exception(task: asyncio.Task):
    # Every caller may have been cancelled before a failure lands
    if not task.cancelled():
        task.exception()
