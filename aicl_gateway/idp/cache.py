"""
Single-Flight TTL Cache

In-memory cache used by the identity directory for provider lookups.

Properties:
    - Entries are valid for ``ttl_seconds`` after they were fetched; a stale
      entry is refreshed on the next read.
    - At most one fetch per key is in flight. Callers arriving while a fetch
      runs await the same future and observe the same result or error.
    - Failed fetches are never stored, so the next call fetches again.
    - Invalidation drops the entry and detaches any in-flight fetch for the
      key; the detached fetch still answers its own callers but does not
      write its result back.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

from ..errors import UpstreamFailure

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    fetched_at: float


class SingleFlightCache(Generic[K, V]):
    """
    Keyed TTL cache with per-key single-flight fetches.

    Intended for use from a single event loop; all bookkeeping happens
    between awaits, so no lock is needed.

    Attributes:
        name: Namespace name used in log records
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, CacheEntry[V]] = {}
        self._inflight: Dict[K, "asyncio.Future[V]"] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[call-overload]
        return entry is not None and self._is_fresh(entry)

    def peek(self, key: K) -> Optional[V]:
        """Return the cached value for *key* if it is still fresh."""
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            return entry.value
        return None

    async def get_or_fetch(self, key: K, fetch: Callable[[], Awaitable[V]]) -> V:
        """
        Return the cached value for *key*, fetching it at most once.

        Args:
            key: Cache key
            fetch: Zero-argument coroutine factory producing the value

        Returns:
            The cached or freshly fetched value

        Raises:
            Whatever *fetch* raises; the error is shared with concurrent callers
        """
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            return entry.value

        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug("Joining in-flight fetch", extra={"cache": self.name, "key": str(key)})
            return await asyncio.shield(pending)

        future: "asyncio.Future[V]" = asyncio.get_running_loop().create_future()
        self._inflight[key] = future

        try:
            value = await fetch()
        except asyncio.CancelledError:
            self._fail(key, future, UpstreamFailure(f"{self.name} fetch was cancelled"))
            raise
        except Exception as exc:
            self._fail(key, future, exc)
            raise

        if self._inflight.get(key) is future:
            del self._inflight[key]
            self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())
        future.set_result(value)
        return value

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)
        self._inflight.pop(key, None)

    def invalidate_where(self, predicate: Callable[[K, V], bool]) -> int:
        """
        Drop every entry for which ``predicate(key, value)`` is true.

        Returns:
            Number of entries dropped
        """
        doomed = [key for key, entry in self._entries.items() if predicate(key, entry.value)]
        for key in doomed:
            self.invalidate(key)
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
        self._inflight.clear()

    def _is_fresh(self, entry: CacheEntry[V]) -> bool:
        return (self._clock() - entry.fetched_at) < self._ttl

    def _fail(self, key: K, future: "asyncio.Future[V]", exc: BaseException) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.done():
            future.set_exception(exc)
            # Mark retrieved; the leader re-raises it and waiters, if any, get it too
            future.exception()
        logger.debug(
            "Fetch failed, nothing cached",
            extra={"cache": self.name, "key": str(key), "error": type(exc).__name__},
        )
