from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class _Flight:
    task: "asyncio.Future[Any]"
    waiters: int = 0


def _key_part(value: Any) -> Hashable:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return tuple(_key_part(getattr(value, f.name)) for f in dataclasses.fields(value))
    if isinstance(value, (set, frozenset)):
        return tuple(sorted(_key_part(item) for item in value))
    if isinstance(value, (list, tuple)):
        return tuple(_key_part(item) for item in value)
    return value


def cache_key(name: str, *parts: Any) -> Tuple[Hashable, ...]:
    """Build a hashable cache key; dates become ISO strings and sequences tuples."""

    return (name,) + tuple(_key_part(part) for part in parts)


class ResultCache:
    """
    Keyed cache of computed results with a per-call time-to-live.

    Entries are only checked for staleness when read. Concurrent callers asking
    for the same key while a computation runs share that single computation.
    A computation that fails or is cancelled stores nothing.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._inflight: Dict[Hashable, _Flight] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        return entry[1] if entry is not None else None

    async def get_or_compute(
        self,
        key: Hashable,
        ttl: float,
        producer: Callable[[], Awaitable[Any]],
    ) -> Any:
        if ttl <= 0:
            raise ConfigError(f"Cache TTL must be positive, got {ttl}")

        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry[0] < ttl:
                logger.debug("Cache hit for %s", key)
                return entry[1]

            flight = self._inflight.get(key)
            if flight is None:
                logger.debug("Cache miss for %s, computing", key)
                flight = _Flight(task=asyncio.ensure_future(self._compute(key, producer)))
                self._inflight[key] = flight
            flight.waiters += 1

        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            if not flight.task.done() and flight.waiters == 1:
                # Last waiter gone: abort the computation itself.
                if self._inflight.get(key) is flight:
                    del self._inflight[key]
                flight.task.cancel()
            raise
        finally:
            flight.waiters -= 1

    async def _compute(self, key: Hashable, producer: Callable[[], Awaitable[Any]]) -> Any:
        try:
            value = await producer()
        except BaseException:
            self._forget_flight(key)
            raise
        self._entries[key] = (self._clock(), value)
        self._forget_flight(key)
        return value

    def _forget_flight(self, key: Hashable) -> None:
        flight = self._inflight.get(key)
        if flight is not None and flight.task is asyncio.current_task():
            del self._inflight[key]

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
