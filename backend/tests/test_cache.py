from __future__ import annotations

from atlhub.services.cache import ExpiringCache


class TestGetSet:
    def test_set_then_get_returns_value(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("jiracloud", "client", ttl_seconds=60)
        assert cache.get("jiracloud") == "client"

    def test_missing_key_is_none(self, clock) -> None:
        assert ExpiringCache(clock=clock).get("nope") is None

    def test_value_visible_until_ttl_then_gone(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("k", "v", ttl_seconds=10)

        clock.advance(9.5)
        assert cache.get("k") == "v"

        clock.advance(0.5)
        assert cache.get("k") is None
        # a second read right after expiry does not bring it back
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_expired_entry_is_purged(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("k", "v", ttl_seconds=1)
        clock.advance(5)
        assert "k" not in cache
        assert cache.keys() == []

    def test_no_ttl_never_expires(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("k", "v")
        clock.advance(10**9)
        assert cache.get("k") == "v"
        assert cache.ttl_remaining("k") is None

    def test_set_overwrites_and_restarts_ttl(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("k", "v1", ttl_seconds=10)
        clock.advance(8)
        cache.set("k", "v2", ttl_seconds=10)
        clock.advance(8)
        assert cache.get("k") == "v2"


class TestUpdate:
    def test_update_keeps_original_expiry(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("k", "v1", ttl_seconds=100)
        clock.advance(60)

        assert cache.update("k", "v2") is True
        assert cache.get("k") == "v2"
        assert cache.ttl_remaining("k") == 40

        clock.advance(40)
        assert cache.get("k") is None

    def test_update_missing_key_is_noop(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        assert cache.update("ghost", "v") is False
        assert cache.get("ghost") is None
        assert len(cache) == 0

    def test_update_after_expiry_does_not_revive(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("k", "v1", ttl_seconds=5)
        clock.advance(5)
        assert cache.update("k", "v2") is False
        assert cache.get("k") is None

    def test_update_can_retag_generation(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("k", "v1", ttl_seconds=5, generation=1)
        cache.update("k", "v2", generation=3)
        entry = cache.entry("k")
        assert entry is not None
        assert entry.generation == 3
        assert entry.value == "v2"


class TestClear:
    def test_clear_one(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear("a")
        cache.clear("missing")
        assert cache.keys() == ["b"]

    def test_clear_all(self, clock) -> None:
        cache = ExpiringCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2, ttl_seconds=3)
        cache.clear_all()
        assert len(cache) == 0
