import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class ResponseCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Initialize response cache.

        Args:
            clock: Time source in seconds (monotonic by default)
        """
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str, ttl: float, force_refresh: bool = False) -> Optional[Any]:
        """
        Get a cached value if it is still fresh.

        Args:
            key: Cache key
            ttl: Freshness window in seconds, chosen by the caller
            force_refresh: Treat any entry as stale

        Returns:
            Cached value, or None on miss, stale entry or forced refresh

        Logic:
        1. Missing entry -> None
        2. force_refresh -> None (entry is kept, the caller will overwrite it)
        3. now - stored_at > ttl -> None
        """
        entry = self._entries.get(key)
        if entry is None or force_refresh:
            return None
        if self._clock() - entry.stored_at > ttl:
            logger.debug(f"Cache entry {key} is stale")
            return None
        return entry.value

    def set(self, key: str, value: Any) -> None:
        """Store value under key, overwriting any previous entry."""
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def clear(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear_prefix(self, prefix: str) -> int:
        """
        Drop every entry whose key starts with prefix.

        Returns:
            Number of entries removed
        """
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cache entries under {prefix}")
        return len(stale)

    def clear_all(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_load(
        self,
        key: str,
        ttl: float,
        loader: Callable[[], Awaitable[Any]],
        force_refresh: bool = False,
    ) -> Any:
        """
        Return the cached value or compute, store and return a fresh one.

        Loader exceptions propagate and nothing is stored.
        """
        cached = self.get(key, ttl, force_refresh)
        if cached is not None:
            logger.debug(f"Cache hit for {key}")
            return cached

        value = await loader()
        self.set(key, value)
        return value
