"""
Tests for the in-memory history store.
"""

from __future__ import annotations

import threading

import pytest

from notification_triage.engine.errors import DependencyUnavailable
from notification_triage.engine.store import InMemoryHistoryStore


class ManualClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


@pytest.fixture
def tick():
    return ManualClock()


@pytest.fixture
def store(tick):
    return InMemoryHistoryStore(clock=tick)


class TestValues:
    def test_missing_key_is_absent(self, store):
        assert store.get("nope") is None
        assert store.exists("nope") is False
        assert store.get_count("nope") == 0
        assert store.ttl("nope") is None

    def test_set_if_absent(self, store):
        assert store.set_if_absent("k", "first", 60) is True
        assert store.set_if_absent("k", "second", 60) is False
        assert store.get("k") == "first"

    def test_values_expire(self, store, tick):
        store.set("k", "v", 60)
        tick.t += 59
        assert store.exists("k")
        assert store.ttl("k") == pytest.approx(1)
        tick.t += 1
        assert not store.exists("k")
        assert store.set_if_absent("k", "again", 60) is True

    def test_delete(self, store):
        store.set("k", "v", 60)
        store.incr("c", 60)

        store.delete("k")
        store.delete("c")
        store.delete("never-set")

        assert store.get("k") is None
        assert store.get_count("c") == 0


class TestCounters:
    def test_incr_keeps_first_ttl(self, store, tick):
        assert store.incr("c", 100) == 1
        tick.t += 50
        assert store.incr("c", 100) == 2
        assert store.ttl("c") == pytest.approx(50)
        tick.t += 50
        assert store.get_count("c") == 0
        assert store.incr("c", 100) == 1

    def test_decr_keeps_ttl_and_ignores_missing(self, store, tick):
        store.incr("c", 100)
        store.incr("c", 100)
        tick.t += 40

        assert store.decr("c") == 1
        assert store.ttl("c") == pytest.approx(60)
        assert store.decr("absent") == 0
        assert not store.exists("absent")

    def test_concurrent_increments_are_atomic(self):
        store = InMemoryHistoryStore()

        def bump():
            for _ in range(500):
                store.incr("shared", 60)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_count("shared") == 4000


class TestRecentLists:
    def test_newest_first_and_capped(self, store):
        for i in range(5):
            store.push_recent("r", i, max_len=3, ttl_seconds=60)

        assert store.get_recent("r") == [4, 3, 2]

    def test_list_expires(self, store, tick):
        store.push_recent("r", "x", max_len=3, ttl_seconds=10)
        tick.t += 10
        assert store.get_recent("r") == []


class TestOutage:
    def test_every_call_raises_when_unavailable(self, store):
        store.available = False

        for call in (
            lambda: store.get("k"),
            lambda: store.set("k", 1, 1),
            lambda: store.exists("k"),
            lambda: store.incr("k", 1),
            lambda: store.decr("k"),
            lambda: store.delete("k"),
            lambda: store.get_recent("k"),
        ):
            with pytest.raises(DependencyUnavailable):
                call()
