"""Tests for the TTL cache — expiry, batching, namespaces, degradation."""

import pytest

from smartmoney.pipelines.batch_fetch import BatchFetchOrchestrator
from smartmoney.pipelines.progressive import ProgressiveLoader
from smartmoney.services.cache import CacheEntry, TTLCache, normalize_key

DAY = 86400


class CountingStore:
    """Wraps a store and counts calls per method."""

    def __init__(self, inner):
        self.inner = inner
        self.calls: dict[str, int] = {}

    def __getattr__(self, name):
        method = getattr(self.inner, name)

        async def wrapper(*args, **kwargs):
            self.calls[name] = self.calls.get(name, 0) + 1
            return await method(*args, **kwargs)

        return wrapper


class TestCacheEntry:
    def test_build_entry_stamps_ttl(self, profile_cache, clock):
        entry = profile_cache.build_entry("0xAbC", {"v": 1})
        assert entry.key == "0xabc"
        assert entry.created_at == clock.now()
        assert entry.expires_at == clock.now() + DAY

    def test_is_expired_boundary(self):
        entry = CacheEntry(key="k", payload={}, created_at=0, expires_at=10)
        assert entry.is_expired(9.999) is False
        assert entry.is_expired(10) is True

    def test_normalize_key(self):
        assert normalize_key("  0xABC ") == "0xabc"

    def test_ttl_must_be_positive(self, store):
        with pytest.raises(ValueError):
            TTLCache(store, "bad", 0)


class TestCacheGetPut:
    @pytest.mark.asyncio
    async def test_put_then_get(self, profile_cache):
        await profile_cache.put(profile_cache.build_entry("A", {"name": "a"}))
        entry = await profile_cache.get("A")
        assert entry is not None
        assert entry.payload == {"name": "a"}

    @pytest.mark.asyncio
    async def test_get_miss(self, profile_cache):
        assert await profile_cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_keys_case_insensitive(self, profile_cache):
        await profile_cache.put(profile_cache.build_entry("0xABC", {"v": 1}))
        assert (await profile_cache.get("0xabc")).payload == {"v": 1}

    @pytest.mark.asyncio
    async def test_put_overwrites(self, profile_cache):
        await profile_cache.put(profile_cache.build_entry("A", {"v": 1}))
        await profile_cache.put(profile_cache.build_entry("A", {"v": 2}))
        assert (await profile_cache.get("A")).payload == {"v": 2}

    @pytest.mark.asyncio
    async def test_hit_before_ttl_miss_after(self, profile_cache, store, clock):
        """Entry written at t0 is a hit at t0+23h59m and a miss at t0+24h01m."""
        await profile_cache.put(profile_cache.build_entry("A", {"v": 1}))

        clock.advance(DAY - 60)
        assert await profile_cache.get("A") is not None

        clock.advance(120)
        assert await profile_cache.get("A") is None
        assert await profile_cache.get_many(["A"]) == {}
        assert await store.get("profiles:a") is None

    @pytest.mark.asyncio
    async def test_expired_exactly_at_expires_at(self, profile_cache, clock):
        await profile_cache.put(profile_cache.build_entry("A", {}))
        clock.advance(DAY)
        assert await profile_cache.get("A") is None

    @pytest.mark.asyncio
    async def test_is_valid_does_not_purge(self, profile_cache, store, clock):
        await profile_cache.put(profile_cache.build_entry("A", {}))
        assert await profile_cache.is_valid("A") is True
        clock.advance(DAY + 1)
        assert await profile_cache.is_valid("A") is False
        assert await store.get("profiles:a") is not None


class TestCacheBatch:
    @pytest.mark.asyncio
    async def test_get_many_returns_only_hits(self, profile_cache):
        await profile_cache.put_many([
            profile_cache.build_entry("A", {"v": "a"}),
            profile_cache.build_entry("B", {"v": "b"}),
        ])
        hits = await profile_cache.get_many(["A", "b", "C"])
        assert set(hits) == {"a", "b"}
        assert hits["b"].payload == {"v": "b"}

    @pytest.mark.asyncio
    async def test_get_many_single_store_call(self, store, clock):
        counting = CountingStore(store)
        cache = TTLCache(counting, "profiles", DAY, clock)
        await cache.put_many([cache.build_entry(k, {}) for k in "abcde"])
        assert counting.calls == {"put_many": 1}

        await cache.get_many(list("abcdefgh"))
        assert counting.calls["get_many"] == 1
        assert "get" not in counting.calls

    @pytest.mark.asyncio
    async def test_get_many_purges_expired_in_one_delete(self, store, clock):
        counting = CountingStore(store)
        cache = TTLCache(counting, "profiles", 100, clock)
        await cache.put_many([cache.build_entry(k, {}) for k in "abc"])
        clock.advance(50)
        await cache.put(cache.build_entry("d", {}))
        clock.advance(60)

        hits = await cache.get_many(list("abcd"))
        assert list(hits) == ["d"]
        assert counting.calls["delete_many"] == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_put_many_empty(self, profile_cache):
        assert await profile_cache.put_many([]) == 0

    @pytest.mark.asyncio
    async def test_filter_needing_fetch_keeps_order(self, profile_cache):
        await profile_cache.put(profile_cache.build_entry("b", {}))
        assert await profile_cache.filter_needing_fetch(["c", "B", "a"]) == ["c", "a"]


class TestCacheEviction:
    @pytest.mark.asyncio
    async def test_evict_expired_counts(self, profile_cache, clock):
        await profile_cache.put_many([profile_cache.build_entry(k, {}) for k in "abc"])
        clock.advance(DAY + 1)
        await profile_cache.put(profile_cache.build_entry("d", {}))

        assert await profile_cache.evict_expired() == 3
        assert await profile_cache.get("d") is not None
        assert await profile_cache.evict_expired() == 0

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, store, clock):
        profiles = TTLCache(store, "profiles", 10, clock)
        followed = TTLCache(store, "followed_profiles", 1000, clock)
        await profiles.put(profiles.build_entry("a", {"ns": "profiles"}))
        await followed.put(followed.build_entry("a", {"ns": "followed"}))

        clock.advance(20)
        assert await profiles.evict_expired() == 1
        assert (await followed.get("a")).payload == {"ns": "followed"}

    @pytest.mark.asyncio
    async def test_invalidate_and_clear(self, profile_cache):
        await profile_cache.put_many([profile_cache.build_entry(k, {}) for k in "abc"])
        await profile_cache.invalidate(["A"])
        assert await profile_cache.get("a") is None
        assert await profile_cache.clear() == 2
        assert await profile_cache.get_many(["b", "c"]) == {}


class TestCacheDegradation:
    @pytest.mark.asyncio
    async def test_reads_become_misses(self, failing_store, clock):
        cache = TTLCache(failing_store, "profiles", DAY, clock)
        assert await cache.get("a") is None
        assert await cache.get_many(["a", "b"]) == {}
        assert await cache.is_valid("a") is False

    @pytest.mark.asyncio
    async def test_writes_become_noops(self, failing_store, clock):
        cache = TTLCache(failing_store, "profiles", DAY, clock)
        await cache.put(cache.build_entry("a", {}))
        assert await cache.put_many([cache.build_entry("b", {})]) == 0
        assert await cache.evict_expired() == 0
        await cache.invalidate(["a"])
        assert await cache.clear() == 0

    @pytest.mark.asyncio
    async def test_everything_needs_fetch(self, failing_store, clock):
        cache = TTLCache(failing_store, "profiles", DAY, clock)
        assert await cache.filter_needing_fetch(["a", "b"]) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_storage_errors_counted(self, failing_store, clock):
        cache = TTLCache(failing_store, "profiles", DAY, clock)
        await cache.get("a")
        await cache.put(cache.build_entry("a", {}))
        assert cache.stats()["storage_errors"] == 2

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_purged_miss(self, profile_cache, store):
        await store.put_many({"profiles:a": {"bogus": 1}, "profiles:b": {"payload": "x"}})
        await profile_cache.put(profile_cache.build_entry("c", {"v": 3}))

        hits = await profile_cache.get_many(["a", "b", "c"])

        assert list(hits) == ["c"]
        assert await store.get("profiles:a") is None
        assert await store.get("profiles:b") is None

    @pytest.mark.asyncio
    async def test_unreadable_entry_everywhere(self, profile_cache, store):
        await store.put("profiles:a", {"bogus": 1})
        assert await profile_cache.is_valid("a") is False
        assert await profile_cache.filter_needing_fetch(["a"]) == ["a"]
        assert await profile_cache.evict_expired() == 1
        await store.put("profiles:a", {"bogus": 1})
        assert await profile_cache.get("a") is None
        assert await store.get("profiles:a") is None


class TestCacheKeyNormalization:
    @pytest.mark.asyncio
    async def test_entry_built_outside_cache_is_normalized(self, profile_cache, clock):
        now = clock.now()
        await profile_cache.put(CacheEntry(key="0xABC", payload={"v": 1}, created_at=now, expires_at=now + 60))

        hits = await profile_cache.get_many(["0xabc"])

        assert list(hits) == ["0xabc"]
        assert hits["0xabc"].key == "0xabc"
        assert (await profile_cache.get("0XAbc")).key == "0xabc"

    @pytest.mark.asyncio
    async def test_put_many_normalizes(self, profile_cache, clock):
        now = clock.now()
        await profile_cache.put_many([
            CacheEntry(key=" 0xDEF ", payload={}, created_at=now, expires_at=now + 60),
        ])
        assert list(await profile_cache.get_many(["0xdef"])) == ["0xdef"]

    @pytest.mark.asyncio
    async def test_loader_uses_mixed_case_cache_hit(self, profile_cache, clock, source):
        now = clock.now()
        await profile_cache.put(CacheEntry(key="0xABC", payload={"from": "cache"}, created_at=now, expires_at=now + 60))
        loader = ProgressiveLoader(profile_cache, BatchFetchOrchestrator(source, inter_batch_delay_ms=0))

        view = await loader.initialize(["0xAbC"])

        assert source.calls == []
        assert view.items[0].source == "cached"
        assert view.items[0].payload == {"from": "cache"}


class TestCacheStats:
    @pytest.mark.asyncio
    async def test_hit_rate(self, profile_cache):
        await profile_cache.put(profile_cache.build_entry("a", {}))
        await profile_cache.get("a")
        await profile_cache.get("b")
        stats = profile_cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0
        assert stats["namespace"] == "profiles"
