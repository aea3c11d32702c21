"""Keeps one stop's realtime arrivals live while someone is watching it."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

from transit_cache import TransitCache
from transit_models import RealtimeArrival

DEFAULT_REFRESH_S = 10.0

UpdateHandler = Callable[[List[RealtimeArrival]], Any]


class InterestToken:
    """Set by the consumer; checked before a refreshed value is applied."""

    def __init__(self) -> None:
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def revoke(self) -> None:
        self._active = False


class RealtimeRefreshLoop:
    """Every ``interval_s``: drop the cached realtime entry, refetch, hand it over.

    A failed tick is logged and skipped so the consumer keeps its last value.
    The loop ends once the token is revoked. Revoking never cancels a fetch
    already in flight, since other callers may share it; its result is just
    not delivered.
    """

    def __init__(
        self,
        cache: TransitCache,
        stop_id: str,
        on_update: UpdateHandler,
        *,
        interval_s: float = DEFAULT_REFRESH_S,
        token: Optional[InterestToken] = None,
    ) -> None:
        self._cache = cache
        self.stop_id = stop_id
        self._on_update = on_update
        self.interval_s = interval_s
        self.token = token or InterestToken()
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0

    async def refresh_once(self) -> bool:
        """Run one tick. Returns True when a value was delivered."""
        self._cache.invalidate_realtime_arrivals(self.stop_id)
        try:
            arrivals = await self._cache.get_realtime_arrivals(self.stop_id)
        except Exception as exc:
            self.failures += 1
            print(f"[realtime] refresh for stop {self.stop_id} failed: {exc}")
            return False
        if not self.token.active:
            return False
        try:
            result = self._on_update(arrivals)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.failures += 1
            print(f"[realtime] update handler for stop {self.stop_id} failed: {exc}")
            return False
        return True

    async def run(self) -> None:
        while self.token.active:
            await asyncio.sleep(self.interval_s)
            if not self.token.active:
                break
            self.ticks += 1
            await self.refresh_once()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
        return self._task

    def stop(self) -> None:
        self.token.revoke()
        if self._task is not None and not self._task.done():
            # Only interrupts the sleep or the shielded wait, never the fetch itself.
            self._task.cancel()


class RealtimeRefreshHub:
    """One shared refresh loop per watched stop, fanned out to its subscribers.

    The first subscriber of a stop starts its loop and the last one to leave
    stops it, so any number of watchers costs one backend call per tick.
    """

    def __init__(self, cache: TransitCache, *, interval_s: float = DEFAULT_REFRESH_S) -> None:
        self._cache = cache
        self.interval_s = interval_s
        self._loops: Dict[str, RealtimeRefreshLoop] = {}
        self._subscribers: Dict[str, Dict[InterestToken, UpdateHandler]] = {}

    def subscribe(self, stop_id: str, on_update: UpdateHandler) -> InterestToken:
        token = InterestToken()
        self._subscribers.setdefault(stop_id, {})[token] = on_update
        if stop_id not in self._loops:
            loop = RealtimeRefreshLoop(
                self._cache,
                stop_id,
                lambda arrivals: self._fan_out(stop_id, arrivals),
                interval_s=self.interval_s,
            )
            self._loops[stop_id] = loop
            loop.start()
        return token

    def unsubscribe(self, stop_id: str, token: InterestToken) -> None:
        token.revoke()
        subscribers = self._subscribers.get(stop_id)
        if subscribers is not None:
            subscribers.pop(token, None)
            if subscribers:
                return
            del self._subscribers[stop_id]
        loop = self._loops.pop(stop_id, None)
        if loop is not None:
            loop.stop()

    def subscriber_count(self, stop_id: str) -> int:
        return len(self._subscribers.get(stop_id, {}))

    def watched_stops(self) -> List[str]:
        return sorted(self._loops)

    async def refresh(self, stop_id: str) -> bool:
        """Run one tick of a watched stop's loop now."""
        loop = self._loops.get(stop_id)
        if loop is None:
            return False
        return await loop.refresh_once()

    async def _fan_out(self, stop_id: str, arrivals: List[RealtimeArrival]) -> None:
        for token, handler in list(self._subscribers.get(stop_id, {}).items()):
            if not token.active:
                continue
            try:
                result = handler(arrivals)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                print(f"[realtime] subscriber for stop {stop_id} failed: {exc}")

    def stop_all(self) -> None:
        for stop_id in list(self._subscribers):
            for token in list(self._subscribers[stop_id]):
                self.unsubscribe(stop_id, token)


__all__ = ["DEFAULT_REFRESH_S", "InterestToken", "RealtimeRefreshHub", "RealtimeRefreshLoop"]
