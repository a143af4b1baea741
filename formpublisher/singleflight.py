"""Per-key single-flight guard.

A second caller for a key that is already in flight is rejected immediately
with ConcurrentOperationError; nothing is queued.

Usage:
    async with guard.hold("store_1"):
        ...
"""

from contextlib import asynccontextmanager
import logging
import threading
from typing import AsyncIterator, Set

from formpublisher.errors import ConcurrentOperationError

logger = logging.getLogger(__name__)


class SingleFlight:
    """In-memory set of keys with an operation in progress."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    def is_busy(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def acquire(self, key: str) -> None:
        """Mark ``key`` as in flight.

        Raises:
            ConcurrentOperationError: If ``key`` is already in flight
        """
        with self._lock:
            if key in self._in_flight:
                logger.warning(f"Rejected concurrent operation for tenant={key}")
                raise ConcurrentOperationError(key)
            self._in_flight.add(key)

    def release(self, key: str) -> None:
        with self._lock:
            self._in_flight.discard(key)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)


__all__ = ["SingleFlight"]
