"""In-process TTL cache and a view-count batcher.

Each worker keeps its own copies; nothing here coordinates across processes.
"""

from __future__ import annotations

import re
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

T = TypeVar("T")


@dataclass
class _Entry:
    data: Any
    expires_at: float


class TTLCache:
    def __init__(self, default_ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: str, fetcher: Callable[[], T], ttl: float | None = None) -> T:
        """Return the cached value if fresh, otherwise call `fetcher` and cache its result."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now < entry.expires_at:
                return entry.data

        # Fetch outside the lock; a concurrent miss just fetches twice.
        data = fetcher()
        with self._lock:
            self._entries[key] = _Entry(data, now + (self.default_ttl if ttl is None else ttl))
        return data

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> None:
        rx = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            for key in [k for k in self._entries if rx.search(k)]:
                del self._entries[key]

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            dead = [k for k, e in self._entries.items() if now > e.expires_at]
            for k in dead:
                del self._entries[k]
        return len(dead)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


categories_cache = TTLCache(300.0)
swarms_cache = TTLCache(30.0)


class ViewCountBatcher:
    """Buffer +1 views per swarm and write them in one go."""

    def __init__(self, flush_every: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.flush_every = flush_every
        self._clock = clock
        self._buffer: dict[str, int] = {}
        self._lock = threading.Lock()
        self._last_flush = clock()

    def increment(self, swarm_id: str) -> None:
        with self._lock:
            self._buffer[swarm_id] = self._buffer.get(swarm_id, 0) + 1

    def pending(self) -> dict[str, int]:
        with self._lock:
            return dict(self._buffer)

    def due(self) -> bool:
        return self._clock() - self._last_flush >= self.flush_every

    def flush(self, conn: sqlite3.Connection) -> int:
        """Apply buffered counts using `conn`. Returns the number of swarms updated."""
        with self._lock:
            batch = self._buffer
            self._buffer = {}
            self._last_flush = self._clock()
        if not batch:
            return 0

        try:
            for swarm_id, count in batch.items():
                conn.execute(
                    "UPDATE swarms SET views_count = views_count + ? WHERE id=?",
                    (count, swarm_id),
                )
        except sqlite3.Error:
            # Put the counts back for the next flush.
            with self._lock:
                for swarm_id, count in batch.items():
                    self._buffer[swarm_id] = self._buffer.get(swarm_id, 0) + count
            raise
        return len(batch)


view_counts = ViewCountBatcher()
