from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 600.0


@dataclass(frozen=True)
class _Entry:
    secret: str
    cached_at: float


@dataclass(frozen=True)
class _Tombstone:
    generation: int
    invalidated_at: float


class GuestTokenCache:
    """Process-local ``guest_id -> secret`` cache with a fixed TTL.

    Only a fast path for repeat visits: storage stays authoritative, and the
    conversion transaction invalidates entries explicitly after commit.

    ``invalidate`` leaves a tombstone stamped with a generation number. A
    reader that takes ``invalidation_mark()`` before reading storage and hands
    it to ``put(..., since=mark)`` cannot re-cache a guest that was invalidated
    while its read was in flight.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._tombstones: Dict[str, _Tombstone] = {}
        self._generation = 0
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, cached_at: float, now: float) -> bool:
        return now - cached_at >= self.ttl_seconds

    def get(self, guest_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(guest_id)
            if entry is None:
                return None
            if self._expired(entry.cached_at, self._clock()):
                del self._entries[guest_id]
                return None
            return entry.secret

    def invalidation_mark(self) -> int:
        with self._lock:
            return self._generation

    def put(self, guest_id: str, secret: str, *, since: Optional[int] = None) -> bool:
        """Cache ``secret``; returns False when skipped.

        With ``since``, the write is skipped if ``guest_id`` was invalidated
        after that mark was taken.
        """
        with self._lock:
            tombstone = self._tombstones.get(guest_id)
            if since is not None and tombstone is not None and tombstone.generation > since:
                logger.debug("Skipped caching a guest invalidated during its read")
                return False
            self._entries[guest_id] = _Entry(secret=secret, cached_at=self._clock())
            return True

    def invalidate(self, guest_id: str) -> bool:
        with self._lock:
            self._generation += 1
            self._tombstones[guest_id] = _Tombstone(
                generation=self._generation, invalidated_at=self._clock()
            )
            return self._entries.pop(guest_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tombstones.clear()

    def sweep(self) -> int:
        """Drop every expired entry and old tombstone; returns how many entries were evicted."""
        with self._lock:
            now = self._clock()
            stale = [key for key, entry in self._entries.items() if self._expired(entry.cached_at, now)]
            for key in stale:
                del self._entries[key]
            # A read outliving the TTL is not worth guarding against.
            buried = [
                key
                for key, tombstone in self._tombstones.items()
                if self._expired(tombstone.invalidated_at, now)
            ]
            for key in buried:
                del self._tombstones[key]
        if stale:
            logger.debug("Guest token cache sweep evicted %d entries", len(stale))
        return len(stale)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
