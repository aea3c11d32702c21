"""Single-flight caches for shared STCP resources.

A resource is fetched at most once per generation: concurrent callers await
the same in-flight task and a failed fetch drops its slot so the next caller
starts a fresh attempt. Key-less results stay cached for the life of the cache
object; keyed slots can also expire after a TTL and are capped in number.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional


class SingleFlightCache:
    """Shares one fetch among every caller of a key-less resource."""

    def __init__(self, fetcher: Callable[[], Awaitable[Any]], name: str = "resource"):
        self.name = name
        self._fetcher = fetcher
        self._pending: Optional[asyncio.Task] = None

    @property
    def cached(self) -> bool:
        return self._pending is not None

    def _start(self) -> asyncio.Task:
        task = asyncio.ensure_future(self._fetcher())
        self._pending = task
        # Registered before any awaiter, so the slot is cleared before a
        # failure reaches the callers.
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            if self._pending is task:
                self._pending = None
            if not task.cancelled():
                print(f"[{self.name}] fetch failed: {task.exception()}")

    async def get(self) -> Any:
        # No await between the check and the store: the event loop cannot
        # interleave another caller here.
        task = self._pending
        if task is None:
            task = self._start()
        # A cancelled caller must not cancel the fetch shared with the others.
        return await asyncio.shield(task)


class KeyedSingleFlightCache:
    """One independent single-flight slot per caller-supplied key.

    ``ttl`` (seconds) expires a settled entry so the next ``get`` refetches it;
    a pending fetch is always shared. ``max_keys`` caps the number of slots,
    evicting the least recently used key first.
    """

    def __init__(
        self,
        fetcher: Callable[[Any], Awaitable[Any]],
        name: str = "resource",
        *,
        ttl: Optional[float] = None,
        max_keys: Optional[int] = None,
    ):
        self.name = name
        self.ttl = ttl
        self.max_keys = max_keys
        self._fetcher = fetcher
        self._pending: Dict[Hashable, asyncio.Task] = {}
        self._settled_at: Dict[Hashable, float] = {}
        self._access_order: List[Hashable] = []

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending

    def keys(self) -> List[Hashable]:
        """Cached keys, least recently used first."""
        return list(self._access_order)

    def _touch(self, key: Hashable) -> None:
        if key in self._access_order:
            self._access_order.remove(key)
        self._access_order.append(key)

    def _expired(self, key: Hashable) -> bool:
        if self.ttl is None:
            return False
        settled = self._settled_at.get(key)
        return settled is not None and time.time() - settled >= self.ttl

    def _start(self, key: Hashable) -> asyncio.Task:
        self.invalidate(key)
        # Evict oldest entries if at capacity
        while self.max_keys is not None and len(self._pending) >= self.max_keys and self._access_order:
            self.invalidate(self._access_order[0])
        task = asyncio.ensure_future(self._fetcher(key))
        self._pending[key] = task
        task.add_done_callback(lambda t: self._on_done(key, t))
        return task

    def _on_done(self, key: Hashable, task: asyncio.Task) -> None:
        # The slot may already hold a newer generation after invalidate().
        current = self._pending.get(key) is task
        if task.cancelled() or task.exception() is not None:
            if current:
                self.invalidate(key)
            if not task.cancelled():
                print(f"[{self.name}] fetch failed for {key!r}: {task.exception()}")
        elif current:
            self._settled_at[key] = time.time()

    async def get(self, key: Hashable) -> Any:
        task = self._pending.get(key)
        if task is None or self._expired(key):
            task = self._start(key)
        self._touch(key)
        return await asyncio.shield(task)

    def invalidate(self, key: Hashable) -> None:
        """Forget ``key`` so the next ``get`` refetches it. Other keys are untouched."""
        self._pending.pop(key, None)
        self._settled_at.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)


__all__ = ["SingleFlightCache", "KeyedSingleFlightCache"]
