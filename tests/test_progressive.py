"""Tests for the progressive loader — windows, cache merge, reconciliation, staleness."""

import asyncio

import pytest

from smartmoney.pipelines.batch_fetch import BatchFetchOrchestrator
from smartmoney.pipelines.progressive import ProgressiveLoader
from smartmoney.services.cache import TTLCache

KEYS = [f"k{i}" for i in range(23)]


def _orchestrator(fetcher, sleep):
    return BatchFetchOrchestrator(fetcher, concurrency=5, inter_batch_delay_ms=0, sleep=sleep)


@pytest.fixture
def loader(profile_cache, source, recording_sleep):
    return ProgressiveLoader(
        profile_cache,
        _orchestrator(source, recording_sleep),
        initial_page_size=10,
        load_more_page_size=5,
    )


async def _wait_until_loading(loader):
    for _ in range(100):
        if loader.is_loading:
            return
        await asyncio.sleep(0)
    raise AssertionError("loader never started fetching")


class TestInitialize:
    @pytest.mark.asyncio
    async def test_first_window(self, loader, source):
        view = await loader.initialize(KEYS)
        assert view.loaded_count == 10
        assert len(view.items) == 10
        assert view.has_more is True
        assert view.is_loading is False
        assert view.total == 23
        assert source.calls == KEYS[:10]

    @pytest.mark.asyncio
    async def test_cache_hits_not_fetched(self, loader, profile_cache, source):
        await profile_cache.put_many([
            profile_cache.build_entry("k0", {"address": "k0", "from": "cache"}),
            profile_cache.build_entry("k15", {"address": "k15", "from": "cache"}),
        ])

        view = await loader.initialize(KEYS)

        assert "k0" not in source.calls
        assert view.items[0].source == "cached"
        assert view.items[0].payload["from"] == "cache"
        assert view.items[1].source == "fetched"
        assert all(item.state == "cached" for item in view.items)

    @pytest.mark.asyncio
    async def test_fetched_written_to_cache(self, loader, profile_cache):
        await loader.initialize(KEYS)
        entry = await profile_cache.get("k5")
        assert entry.payload == {"address": "k5", "user_name": "user-k5"}
        assert await profile_cache.get("k12") is None

    @pytest.mark.asyncio
    async def test_failed_key_marked_error(self, profile_cache, make_source, recording_sleep):
        source = make_source(failing={"k3"})
        loader = ProgressiveLoader(
            profile_cache, _orchestrator(source, recording_sleep), initial_page_size=10,
        )
        view = await loader.initialize(KEYS)

        states = {item.key: item.state for item in view.items}
        assert states["k3"] == "error"
        assert view.items[3].error
        assert view.items[3].source is None
        assert sum(1 for s in states.values() if s == "cached") == 9
        assert await profile_cache.get("k3") is None

    @pytest.mark.asyncio
    async def test_keys_normalized_and_deduped(self, loader, source):
        view = await loader.initialize(["0xAA", "0xaa", " 0xBB "])
        assert [item.key for item in view.items] == ["0xaa", "0xbb"]
        assert source.calls == ["0xaa", "0xbb"]

    @pytest.mark.asyncio
    async def test_empty_key_list(self, loader):
        view = await loader.initialize([])
        assert view.items == []
        assert view.has_more is False

    @pytest.mark.asyncio
    async def test_store_down_still_loads(self, failing_store, clock, source, recording_sleep):
        cache = TTLCache(failing_store, "profiles", 86400, clock)
        loader = ProgressiveLoader(cache, _orchestrator(source, recording_sleep), initial_page_size=3)
        view = await loader.initialize(["a", "b", "c", "d"])
        assert [item.state for item in view.items] == ["cached"] * 3
        assert all(item.source == "fetched" for item in view.items)

    def test_bad_page_size(self, profile_cache, source):
        with pytest.raises(ValueError):
            ProgressiveLoader(profile_cache, BatchFetchOrchestrator(source), initial_page_size=-1)


class TestLoadMore:
    @pytest.mark.asyncio
    async def test_progression_to_the_end(self, loader):
        """23 keys, first page 10, then 5 per call: 10 → 15 → 20 → 23."""
        view = await loader.initialize(KEYS)
        counts = [view.loaded_count]
        while view.has_more:
            view = await loader.load_more()
            counts.append(view.loaded_count)

        assert counts == [10, 15, 20, 23]
        assert len(view.items) == 23
        assert view.has_more is False

    @pytest.mark.asyncio
    async def test_noop_when_exhausted(self, loader, source):
        await loader.initialize(KEYS[:4])
        calls = list(source.calls)
        view = await loader.load_more()
        assert view.loaded_count == 4
        assert source.calls == calls

    @pytest.mark.asyncio
    async def test_fetches_only_new_slice(self, loader, source):
        await loader.initialize(KEYS)
        await loader.load_more()
        assert source.calls == KEYS[:15]

    @pytest.mark.asyncio
    async def test_noop_while_loading(self, profile_cache, recording_sleep):
        gate = asyncio.Event()
        gate.set()
        calls = []

        async def fetcher(key):
            calls.append(key)
            await gate.wait()
            return {"address": key}

        loader = ProgressiveLoader(
            profile_cache, _orchestrator(fetcher, recording_sleep),
            initial_page_size=10, load_more_page_size=5,
        )
        await loader.initialize(KEYS)
        gate.clear()

        task = asyncio.create_task(loader.load_more())
        await _wait_until_loading(loader)
        second = await loader.load_more()
        assert second.loaded_count == 15

        gate.set()
        view = await task
        assert view.loaded_count == 15
        assert len(calls) == 15


class TestReconcile:
    @pytest.mark.asyncio
    async def test_reconcile_resets_window(self, loader):
        await loader.initialize(["a", "b", "c"])
        view = loader.reconcile(["b", "c", "d"])
        assert view.loaded_count == 0
        assert view.items == []
        assert view.total == 3
        assert view.has_more is True

    @pytest.mark.asyncio
    async def test_update_keys_retains_existing_rows(self, loader, source):
        await loader.initialize(["a", "b", "c"])
        view = await loader.update_keys(["b", "c", "d"])

        assert [item.key for item in view.items] == ["b", "c", "d"]
        assert source.calls == ["a", "b", "c", "d"]
        assert view.items[0].source == "fetched"
        assert view.items[2].state == "cached"

    @pytest.mark.asyncio
    async def test_update_keys_reads_cache_for_new_keys(self, loader, profile_cache, source):
        await loader.initialize(["a"])
        await profile_cache.put(profile_cache.build_entry("e", {"address": "e"}))
        view = await loader.update_keys(["a", "e"])
        assert view.items[1].source == "cached"
        assert "e" not in source.calls

    @pytest.mark.asyncio
    async def test_generation_bumps(self, loader):
        await loader.initialize(["a"])
        first = loader.generation
        loader.reconcile(["b"])
        assert loader.generation == first + 1


class TestStaleness:
    @pytest.mark.asyncio
    async def test_stale_fetch_not_merged_but_cached(self, profile_cache, recording_sleep):
        gate = asyncio.Event()

        async def fetcher(key):
            await gate.wait()
            return {"address": key}

        loader = ProgressiveLoader(profile_cache, _orchestrator(fetcher, recording_sleep), initial_page_size=10)
        task = asyncio.create_task(loader.initialize(["a", "b"]))
        await _wait_until_loading(loader)

        loader.reconcile(["z"])
        gate.set()
        await task

        assert loader.keys == ["z"]
        assert loader.is_loading is False
        assert await profile_cache.get("a") is not None

    @pytest.mark.asyncio
    async def test_refetch_reinitializes(self, loader, source):
        await loader.initialize(KEYS)
        await loader.load_more()
        view = await loader.refetch()

        assert view.loaded_count == 10
        assert all(item.source == "cached" for item in view.items)
        assert source.calls == KEYS[:15]


class TestObservers:
    @pytest.mark.asyncio
    async def test_views_published(self, loader):
        views = []
        unsubscribe = loader.subscribe(views.append)

        await loader.initialize(KEYS[:3])
        assert any(v.is_loading for v in views)
        assert views[-1].is_loading is False
        assert len(views[-1].items) == 3

        unsubscribe()
        count = len(views)
        await loader.refetch()
        assert len(views) == count
