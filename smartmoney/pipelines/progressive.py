"""Progressive loader — "first page + load more" over an ordered key list.

Flow per window: TTLCache batch read → fetch misses through the batch
orchestrator → one batched cache write → merge into the view.

Key-set changes go through reconcile(): retained rows are kept as they are,
removed rows are dropped, new keys become loading placeholders. Every
initialize / reconcile / refetch starts a new generation; a fetch that
resolves under an older generation still fills the cache but is not merged
into the view.
"""

import logging
from typing import Callable

from smartmoney.config import settings
from smartmoney.orchestrator.schemas import ProgressiveItem, ProgressiveView
from smartmoney.pipelines.batch_fetch import BatchFetchOrchestrator
from smartmoney.services.cache import TTLCache, normalize_key
from smartmoney.services.generation import GenerationCounter
from smartmoney.services.observers import ObserverList

logger = logging.getLogger(__name__)


class ProgressiveLoader:
    """Incrementally exposes and fills an ordered list of keys."""

    def __init__(
        self,
        cache: TTLCache,
        orchestrator: BatchFetchOrchestrator,
        initial_page_size: int | None = None,
        load_more_page_size: int | None = None,
        concurrency: int | None = None,
    ):
        self.cache = cache
        self.orchestrator = orchestrator
        self.initial_page_size = initial_page_size or settings.initial_page_size
        self.load_more_page_size = load_more_page_size or settings.load_more_page_size
        self.concurrency = concurrency
        if self.initial_page_size <= 0 or self.load_more_page_size <= 0:
            raise ValueError("page sizes must be positive")

        self._keys: list[str] = []
        self._items: dict[str, ProgressiveItem] = {}
        self._loaded_count = 0
        self._is_loading = False
        self._generation = GenerationCounter()
        self._observers: ObserverList[ProgressiveView] = ObserverList()

    # ═══════════════ STATE ═══════════════

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    @property
    def loaded_count(self) -> int:
        return self._loaded_count

    @property
    def has_more(self) -> bool:
        return self._loaded_count < len(self._keys)

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def generation(self) -> int:
        return self._generation.current

    def view(self) -> ProgressiveView:
        window = self._keys[:self._loaded_count]
        return ProgressiveView(
            items=[self._items[k].model_copy() for k in window],
            is_loading=self._is_loading,
            has_more=self.has_more,
            loaded_count=self._loaded_count,
            total=len(self._keys),
        )

    def subscribe(self, callback: Callable[[ProgressiveView], None]) -> Callable[[], None]:
        return self._observers.subscribe(callback)

    # ═══════════════ OPERATIONS ═══════════════

    async def initialize(self, keys: list[str], initial_page_size: int | None = None) -> ProgressiveView:
        """Start a new session: read the cache for all keys, fetch the first window's misses."""
        if initial_page_size is not None:
            if initial_page_size <= 0:
                raise ValueError("initial_page_size must be positive")
            self.initial_page_size = initial_page_size

        token = self._generation.next()
        self._keys = _dedupe(keys)
        self._items = {k: ProgressiveItem(key=k) for k in self._keys}
        self._loaded_count = min(self.initial_page_size, len(self._keys))
        self._is_loading = False
        logger.info(
            "Progressive init | keys=%d | window=%d | gen=%d",
            len(self._keys), self._loaded_count, token,
        )

        await self._apply_cache_hits(self._keys, token)
        await self._fill_window(self._keys[:self._loaded_count], token)
        return self._publish()

    async def load_more(self) -> ProgressiveView:
        """Expose the next page and fetch its misses. No-op if nothing is left or a load is running."""
        if not self.has_more or self._is_loading:
            return self.view()

        token = self._generation.current
        start = self._loaded_count
        step = min(self.load_more_page_size, len(self._keys) - start)
        self._loaded_count = start + step
        logger.info("Progressive load more | loaded=%d/%d", self._loaded_count, len(self._keys))

        await self._fill_window(self._keys[start:self._loaded_count], token)
        return self._publish()

    async def refetch(self) -> ProgressiveView:
        """Drop all progress and run initialize again with the last key list."""
        keys = list(self._keys)
        self._items = {}
        self._loaded_count = 0
        return await self.initialize(keys)

    def reconcile(self, keys: list[str]) -> ProgressiveView:
        """Apply a new key list, keeping rows for keys that survive.

        The exposed window resets to zero; call update_keys() to also page in
        the first window.
        """
        token = self._generation.next()
        new_keys = _dedupe(keys)
        previous = self._items

        self._items = {k: previous.get(k) or ProgressiveItem(key=k) for k in new_keys}
        removed = len(set(previous) - set(new_keys))
        added = len(set(new_keys) - set(previous))
        self._keys = new_keys
        self._loaded_count = 0
        self._is_loading = False
        logger.info(
            "Progressive reconcile | keys=%d | added=%d | removed=%d | gen=%d",
            len(new_keys), added, removed, token,
        )
        return self._publish()

    async def update_keys(self, keys: list[str]) -> ProgressiveView:
        """reconcile() followed by loading the initial window for the new list."""
        self.reconcile(keys)
        token = self._generation.current
        self._loaded_count = min(self.initial_page_size, len(self._keys))

        placeholders = [k for k in self._keys if self._items[k].state != "cached"]
        await self._apply_cache_hits(placeholders, token)
        await self._fill_window(self._keys[:self._loaded_count], token)
        return self._publish()

    # ═══════════════ INTERNALS ═══════════════

    async def _apply_cache_hits(self, keys: list[str], token: int) -> None:
        if not keys:
            return
        hits = await self.cache.get_many(keys)
        if not self._generation.is_current(token):
            logger.debug("Progressive stale cache read dropped | gen=%d", token)
            return
        for key, entry in hits.items():
            if key in self._items:
                self._items[key] = ProgressiveItem(
                    key=key, payload=entry.payload, state="cached", source="cached",
                )

    async def _fill_window(self, window: list[str], token: int) -> None:
        """Fetch the keys in window that have no payload yet and merge the results."""
        missing = [k for k in window if self._items[k].state != "cached"]
        if not missing:
            return

        for key in missing:
            self._items[key] = ProgressiveItem(key=key)
        self._is_loading = True
        self._publish()

        try:
            result = await self.orchestrator.fetch_all(missing, concurrency=self.concurrency)
        finally:
            if self._generation.is_current(token):
                self._is_loading = False

        fetched = [o for o in result.outcomes if o.ok]
        await self.cache.put_many(self.cache.build_entry(o.key, o.payload) for o in fetched)

        if not self._generation.is_current(token):
            logger.debug(
                "Progressive stale merge dropped | gen=%d | current=%d",
                token, self._generation.current,
            )
            return

        for outcome in result.outcomes:
            if outcome.key not in self._items:
                continue
            if outcome.ok:
                self._items[outcome.key] = ProgressiveItem(
                    key=outcome.key, payload=outcome.payload, state="cached", source="fetched",
                )
            else:
                self._items[outcome.key] = ProgressiveItem(
                    key=outcome.key, state="error", error=outcome.error,
                )

    def _publish(self) -> ProgressiveView:
        view = self.view()
        self._observers.notify(view)
        return view


def _dedupe(keys: list[str]) -> list[str]:
    return list(dict.fromkeys(normalize_key(k) for k in keys if k and k.strip()))
