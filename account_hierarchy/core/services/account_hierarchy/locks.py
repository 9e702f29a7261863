"""
Per-tenant serialization of structural mutations.

create, move and remove each issue several independent store writes.
Holding the tenant's lock for the whole sequence keeps two writers in the
same process from computing the same sibling index or interleaving
cascades. It does not span processes; the version check on the moved
account covers that case for move.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class HierarchyLockManager:
    """Lazily created asyncio.Lock per client_id."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._registry_lock = threading.Lock()

    def _get_lock(self, client_id: str) -> asyncio.Lock:
        with self._registry_lock:
            lock = self._locks.get(client_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[client_id] = lock
            return lock

    def is_locked(self, client_id: str) -> bool:
        lock = self._locks.get(client_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def lock(self, client_id: str) -> AsyncIterator[None]:
        tenant_lock = self._get_lock(client_id)
        if tenant_lock.locked():
            logger.debug(f"Waiting for hierarchy lock of client {client_id}")
        async with tenant_lock:
            yield
