from __future__ import annotations

import sqlite3

import pytest

from oas_mvp.app.cache import TTLCache, ViewCountBatcher


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_ttl_cache_hits_until_expiry() -> None:
    clock = FakeClock()
    cache = TTLCache(10.0, clock=clock)
    calls = []

    def fetch():
        calls.append(1)
        return len(calls)

    assert cache.get("k", fetch) == 1
    clock.now += 9
    assert cache.get("k", fetch) == 1
    clock.now += 2
    assert cache.get("k", fetch) == 2
    assert len(calls) == 2


def test_ttl_override_and_invalidate() -> None:
    clock = FakeClock()
    cache = TTLCache(300.0, clock=clock)
    assert cache.get("a", lambda: "x", ttl=1) == "x"
    clock.now += 2
    assert cache.get("a", lambda: "y") == "y"

    cache.invalidate("a")
    assert cache.get("a", lambda: "z") == "z"


def test_invalidate_pattern() -> None:
    cache = TTLCache(60.0)
    for k in ("swarms:featured", "swarms:recent", "categories:counts"):
        cache.get(k, lambda: k)
    cache.invalidate_pattern(r"^swarms:")
    assert len(cache) == 1


def test_fetcher_errors_are_not_cached() -> None:
    cache = TTLCache(60.0)

    def boom():
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        cache.get("k", boom)
    assert len(cache) == 0


def test_purge_expired() -> None:
    clock = FakeClock()
    cache = TTLCache(5.0, clock=clock)
    cache.get("old", lambda: 1)
    clock.now += 10
    cache.get("new", lambda: 2)
    assert cache.purge_expired() == 1
    assert len(cache) == 1


def _views_db() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.execute("CREATE TABLE swarms (id TEXT PRIMARY KEY, views_count INTEGER NOT NULL DEFAULT 0)")
    conn.executemany("INSERT INTO swarms(id) VALUES (?)", [("a",), ("b",)])
    return conn


def test_view_count_batcher_flushes_totals() -> None:
    conn = _views_db()
    b = ViewCountBatcher()
    for sid in ("a", "a", "b", "a"):
        b.increment(sid)
    assert b.pending() == {"a": 3, "b": 1}

    assert b.flush(conn) == 2
    assert b.pending() == {}
    assert dict(conn.execute("SELECT id, views_count FROM swarms").fetchall()) == {"a": 3, "b": 1}
    assert b.flush(conn) == 0


def test_view_count_batcher_due() -> None:
    clock = FakeClock()
    b = ViewCountBatcher(flush_every=30.0, clock=clock)
    assert not b.due()
    clock.now += 30
    assert b.due()


def test_failed_flush_keeps_counts() -> None:
    conn = sqlite3.connect(":memory:")
    b = ViewCountBatcher()
    b.increment("a")
    with pytest.raises(sqlite3.Error):
        b.flush(conn)
    b.increment("a")
    assert b.pending() == {"a": 2}
