"""
Per-key mutual exclusion for request-driven operations.

Each key (a player id or a tournament id) gets its own ``asyncio.Lock`` on
first use, so unrelated keys never wait on each other.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Hashable

logger = logging.getLogger(__name__)

class KeyedLockRegistry:
    """In-memory registry of asyncio locks keyed by entity id.

    Note: locks only serialize callers inside one process. Cross-process
    safety comes from the database (unique constraints and compare-and-set
    status updates); the locks keep in-process callers from racing into them.
    """

    def __init__(self, name: str):
        self.name = name
        self._locks = defaultdict(asyncio.Lock)  # Grows with unique keys seen

    @asynccontextmanager
    async def hold(self, key: Hashable):
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks[key]
        if lock.locked():
            logger.debug(f"Waiting for {self.name} lock on {key}")
        async with lock:
            yield
