"""
Snapshot Cache

Short-TTL read-through cache in front of the ledger store.
Entries are keyed by account id within a namespace ("snapshot", "usage"),
so one invalidation drops every cached view of an account.

WARNING: This implementation only works within a single process/worker.
Cross-instance staleness is still bounded by the TTL.
"""

import asyncio
import logging
import time

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from cachetools import TLRUCache

logger = logging.getLogger(__name__)

# Cache TTL constants (in seconds)
SNAPSHOT_CACHE_TTL: int = 300  # 5 minutes
USAGE_CACHE_TTL: int = 30

SNAPSHOT_NAMESPACE: str = "snapshot"
USAGE_NAMESPACE: str = "usage"


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    ttl: float


def _time_to_use(key: Tuple[str, str], entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


class SnapshotCache:
    """
    In-memory TTL cache with LRU bound and per-account invalidation.

    Entries live in a cachetools TLRUCache, so each one carries its own TTL
    (snapshot and usage views expire on different schedules).

    Usage:
        cache = SnapshotCache(default_ttl=300)
        snapshot = await cache.get_or_load(account_id, lambda: load(account_id))
        await cache.invalidate(account_id)
    """

    def __init__(
        self,
        default_ttl: float = SNAPSHOT_CACHE_TTL,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            default_ttl: TTL in seconds for entries stored without an explicit ttl
            max_size: Maximum number of entries (least recently used evicted first)
            clock: Monotonic time source
        """
        self._entries: TLRUCache = TLRUCache(maxsize=max_size, ttu=_time_to_use, timer=clock)
        # Bumped on every invalidation so an in-flight load can't refill a stale value
        self._generations: Dict[str, int] = {}
        self._loading: Dict[str, int] = {}
        self._default_ttl = default_ttl
        self._lock = asyncio.Lock()

    async def get(self, account_id: str, namespace: str = SNAPSHOT_NAMESPACE) -> Optional[Any]:
        """Get a fresh cached value, or None if missing/expired."""
        async with self._lock:
            entry = self._entries.get((namespace, account_id))
        return entry.data if entry is not None else None

    async def set(
        self,
        account_id: str,
        value: Any,
        ttl: Optional[float] = None,
        namespace: str = SNAPSHOT_NAMESPACE,
    ) -> None:
        """Store a value."""
        async with self._lock:
            self._store((namespace, account_id), value, ttl)

    async def get_or_load(
        self,
        account_id: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        namespace: str = SNAPSHOT_NAMESPACE,
    ) -> Any:
        """
        Return the cached value or load, store and return a fresh one.

        The loader runs outside the lock. If the account is invalidated while
        the loader is running, the loaded value is returned but not stored.
        """
        cached = await self.get(account_id, namespace)
        if cached is not None:
            return cached

        async with self._lock:
            generation = self._generations.get(account_id, 0)
            self._loading[account_id] = self._loading.get(account_id, 0) + 1

        try:
            value = await loader()
        except BaseException:
            async with self._lock:
                self._finish_load(account_id)
            raise

        async with self._lock:
            self._finish_load(account_id)
            if self._generations.get(account_id, 0) == generation:
                self._store((namespace, account_id), value, ttl)
            else:
                logger.debug(f"[CACHE] Skipped refill for {account_id}: invalidated during load")
        return value

    async def invalidate(self, account_id: str) -> None:
        """Drop every cached view of an account."""
        async with self._lock:
            self._generations[account_id] = self._generations.get(account_id, 0) + 1
            for key in [k for k in list(self._entries.keys()) if k[1] == account_id]:
                self._entries.pop(key, None)
        logger.debug(f"[CACHE] Invalidated cache for {account_id}")

    async def sweep(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            expired = self._entries.expire()
            # Generations only matter while a load can be in flight
            live_accounts = {key[1] for key in list(self._entries.keys())} | set(self._loading)
            for account_id in [a for a in self._generations if a not in live_accounts]:
                del self._generations[account_id]
        if expired:
            logger.debug(f"[CACHE] Swept {len(expired)} expired entries")
        return len(expired)

    async def run_sweeper(self, interval: float) -> None:
        """Sweep periodically until cancelled."""
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._generations.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _store(self, key: Tuple[str, str], value: Any, ttl: Optional[float]) -> None:
        self._entries[key] = CacheEntry(data=value, ttl=self._default_ttl if ttl is None else ttl)

    def _finish_load(self, account_id: str) -> None:
        self._loading[account_id] -= 1
        if not self._loading[account_id]:
            del self._loading[account_id]
