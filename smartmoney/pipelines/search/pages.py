"""Paged wallet listing used as the search dataset.

Pages are fetched lazily, one at a time, in total-profit order. Each raw page
is kept in the TTLCache search namespace so repeated searches within a few
minutes do not hit the remote API again.
"""

import logging
import time
from typing import Awaitable, Callable

from smartmoney.config import settings
from smartmoney.orchestrator.schemas import SearchableRecord, WalletPage
from smartmoney.services.cache import TTLCache

logger = logging.getLogger(__name__)

PageFetcher = Callable[[int, int, str, str], Awaitable[WalletPage]]


class PagedSource:
    """Sequential page cursor over fetch_page(page_index, page_size, sort_by, sort_order)."""

    def __init__(
        self,
        fetch_page: PageFetcher,
        cache: TTLCache | None = None,
        page_size: int | None = None,
        sort_by: str = "total_profit",
        sort_order: str = "desc",
    ):
        self.fetch_page = fetch_page
        self.cache = cache
        self.page_size = page_size or settings.search_page_size
        self.sort_by = sort_by
        self.sort_order = sort_order
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        self.reset()

    def reset(self) -> None:
        self.records: list[SearchableRecord] = []
        self.loaded_pages = 0
        self.total: int | None = None
        self._exhausted = False

    @property
    def has_more(self) -> bool:
        if self._exhausted:
            return False
        return self.total is None or len(self.records) < self.total

    def _cache_key(self, page_index: int) -> str:
        return f"{self.sort_by}:{self.sort_order}:{self.page_size}:{page_index}"

    async def load_page(self, page_index: int) -> WalletPage:
        """Fetch one page (cache first). Does not change the cursor."""
        if self.cache is not None:
            entry = await self.cache.get(self._cache_key(page_index))
            if entry is not None:
                logger.debug("Search page cache hit | page=%d", page_index)
                return WalletPage(**entry.payload)

        start = time.monotonic()
        page = await self.fetch_page(page_index, self.page_size, self.sort_by, self.sort_order)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Search page fetched | page=%d | entries=%d | total=%d | %dms",
            page_index, len(page.entries), page.total, elapsed_ms,
        )

        if self.cache is not None:
            await self.cache.put(self.cache.build_entry(self._cache_key(page_index), page.model_dump()))
        return page

    def append(self, page_index: int, page: WalletPage) -> bool:
        """Merge a loaded page if it is the next one expected. Returns True if merged."""
        if page_index != self.loaded_pages:
            return False

        offset = len(self.records)
        self.records.extend(
            SearchableRecord.from_payload(entry, rank=offset + i + 1)
            for i, entry in enumerate(page.entries)
        )
        self.loaded_pages += 1
        self.total = page.total
        if len(page.entries) < self.page_size:
            self._exhausted = True
        return True
