"""Sync engine — wires caches, fetchers and pipelines around one store.

One SyncEngine is built per process (see main.lifespan) and passed to
whoever needs it. It owns three cache namespaces on the shared store:
  - profiles            24h
  - followed_profiles   30 days
  - search_pages        5 minutes
"""

import logging
from typing import Any, Protocol

from smartmoney.config import Settings, settings
from smartmoney.orchestrator.schemas import SearchResult, WalletPage
from smartmoney.pipelines.batch_fetch import BatchFetchOrchestrator
from smartmoney.pipelines.priority_poller import PriorityPoller, ScoreOf
from smartmoney.pipelines.progressive import ProgressiveLoader
from smartmoney.pipelines.search import SearchIndex
from smartmoney.pipelines.search.pages import PagedSource
from smartmoney.pipelines.signals import SignalFetcher
from smartmoney.services.cache import TTLCache
from smartmoney.services.clock import Clock, SystemClock
from smartmoney.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class WalletSource(Protocol):
    async def fetch_profile(self, address: str) -> dict[str, Any]: ...

    async def fetch_page(
        self, page_index: int, page_size: int, sort_by: str, sort_order: str,
    ) -> WalletPage: ...

    async def fetch_trades(self, address: str, limit: int) -> list[dict[str, Any]]: ...


class SyncEngine:
    """Entry point for progressive profile loads, priority polling and search."""

    def __init__(
        self,
        store: KeyValueStore,
        source: WalletSource,
        clock: Clock | None = None,
        config: Settings | None = None,
    ):
        self.store = store
        self.source = source
        self.clock = clock or SystemClock()
        self.config = config or settings

        self.profiles = TTLCache(store, "profiles", self.config.cache_ttl_profiles, self.clock)
        self.followed_profiles = TTLCache(
            store, "followed_profiles", self.config.cache_ttl_followed_profiles, self.clock,
        )
        self.search_pages = TTLCache(store, "search_pages", self.config.cache_ttl_search_pages, self.clock)

        self.orchestrator = BatchFetchOrchestrator(
            source.fetch_profile,
            concurrency=self.config.fetch_concurrency,
            inter_batch_delay_ms=self.config.inter_batch_delay_ms,
        )
        self.search_index = SearchIndex(
            PagedSource(source.fetch_page, self.search_pages, page_size=self.config.search_page_size),
            max_attempts=self.config.search_max_attempts,
            debounce_ms=self.config.search_debounce_ms,
            min_query_length=self.config.search_min_query_length,
            max_results=self.config.search_max_results,
        )
        self._pollers: list[PriorityPoller] = []

    @property
    def caches(self) -> list[TTLCache]:
        return [self.profiles, self.followed_profiles, self.search_pages]

    async def load_progressive(
        self,
        keys: list[str],
        initial_page_size: int | None = None,
        load_more_page_size: int | None = None,
        concurrency: int | None = None,
    ) -> ProgressiveLoader:
        """Loader over the 24h profile cache, with its first window already loaded."""
        loader = ProgressiveLoader(
            self.profiles,
            self.orchestrator,
            initial_page_size=initial_page_size or self.config.initial_page_size,
            load_more_page_size=load_more_page_size or self.config.load_more_page_size,
            concurrency=concurrency,
        )
        await loader.initialize(keys)
        return loader

    async def load_followed_profiles(self, keys: list[str], concurrency: int | None = None) -> ProgressiveLoader:
        """Followed wallets change rarely: 30-day cache, whole list in one window."""
        loader = ProgressiveLoader(
            self.followed_profiles,
            self.orchestrator,
            initial_page_size=max(len(keys), 1),
            load_more_page_size=self.config.load_more_page_size,
            concurrency=concurrency,
        )
        await loader.initialize(keys)
        return loader

    async def poll_by_priority(self, keys: list[str], score_of: ScoreOf) -> PriorityPoller:
        """Start a tiered signal poll over keys. Call stop() on the result when done."""
        fetcher = SignalFetcher(
            self.source.fetch_trades,
            clock=self.clock,
            lookback_minutes=self.config.signal_lookback_minutes,
            limit_per_address=self.config.signal_limit_per_address,
            smart_scores=score_of,
        )
        poller = PriorityPoller(
            fetcher,
            thresholds=self.config.tier_thresholds,
            intervals_ms=self.config.tier_intervals_ms,
            batch_size=self.config.poll_batch_size,
            inter_batch_delay_ms=self.config.inter_batch_delay_ms,
        )
        self._pollers = [p for p in self._pollers if p.is_running]
        self._pollers.append(poller)
        await poller.start(keys, score_of)
        return poller

    async def search(self, query: str, max_results: int | None = None) -> SearchResult:
        return await self.search_index.search(query, max_results)

    async def evict_expired_by_namespace(self) -> dict[str, int]:
        return {cache.namespace: await cache.evict_expired() for cache in self.caches}

    async def evict_expired(self) -> int:
        """Sweep every namespace. Returns the total number of entries removed."""
        removed = await self.evict_expired_by_namespace()
        total = sum(removed.values())
        logger.info("Engine eviction | removed=%d | %s", total, removed)
        return total

    def stats(self) -> dict[str, Any]:
        return {
            "caches": [cache.stats() for cache in self.caches],
            "active_pollers": sum(1 for p in self._pollers if p.is_running),
            "search_pages_loaded": self.search_index.source.loaded_pages,
        }

    async def close(self) -> None:
        for poller in self._pollers:
            if poller.is_running:
                poller.stop()
        self._pollers = []
        self.search_index.clear_search()
        await self.store.close()
        logger.info("Engine closed")
