"""Wallet search — progressive relevance search over the paged wallet listing.

Flow: filter loaded records → while too few matches, load one more page →
re-filter → rank by relevance.

Lazy loading: nothing is fetched until the first non-empty search. Each
search takes a new generation; a page that arrives for an older one is
discarded and that call returns superseded=True.
"""

import asyncio
import logging
from typing import Callable

from smartmoney.config import settings
from smartmoney.errors import StaleResultError
from smartmoney.orchestrator.schemas import SearchProgress, SearchResult
from smartmoney.pipelines.search.pages import PagedSource
from smartmoney.pipelines.search.relevance import filter_records, search_records
from smartmoney.services.generation import GenerationCounter
from smartmoney.services.observers import ObserverList

logger = logging.getLogger(__name__)


class SearchIndex:
    """Searches wallets, pulling more pages on demand until enough matches are found."""

    def __init__(
        self,
        source: PagedSource,
        max_attempts: int | None = None,
        debounce_ms: int | None = None,
        min_query_length: int | None = None,
        max_results: int | None = None,
    ):
        self.source = source
        self.max_attempts = max_attempts or settings.search_max_attempts
        self.debounce_ms = settings.search_debounce_ms if debounce_ms is None else debounce_ms
        self.min_query_length = (
            settings.search_min_query_length if min_query_length is None else min_query_length
        )
        self.max_results = max_results or settings.search_max_results

        self._generation = GenerationCounter()
        self._observers: ObserverList[SearchResult] = ObserverList()
        self._pending: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._is_searching = False
        self._query = ""

    @property
    def is_searching(self) -> bool:
        return self._is_searching

    @property
    def query(self) -> str:
        return self._query

    def progress(self, found_matches: int = 0) -> SearchProgress:
        loaded = len(self.source.records)
        total = self.source.total or 0
        return SearchProgress(
            loaded_pages=self.source.loaded_pages,
            loaded_records=loaded,
            total_records=total,
            percentage=round(loaded / total * 100) if total else 0,
            found_matches=found_matches,
        )

    def subscribe(self, callback: Callable[[SearchResult], None]) -> Callable[[], None]:
        return self._observers.subscribe(callback)

    async def search(self, query: str, max_results: int | None = None) -> SearchResult:
        """Run one search. Loads at most max_attempts extra pages."""
        max_results = max_results or self.max_results
        token = self._generation.next()
        self._query = query
        normalized = query.strip().lower()

        if not normalized:
            self._is_searching = False
            results = [r.payload for r in self.source.records[:max_results]]
            return SearchResult(
                query=query,
                results=results,
                found_count=len(self.source.records),
                progress=self.progress(len(self.source.records)),
            )

        self._is_searching = True
        error = None
        attempts = 0
        found = filter_records(self.source.records, normalized)

        try:
            while len(found) < max_results and self.source.has_more and attempts < self.max_attempts:
                page_index = self.source.loaded_pages
                attempts += 1
                try:
                    page = await self.source.load_page(page_index)
                except Exception as e:
                    self._generation.check(token)
                    error = str(e)[:200]
                    logger.warning("Search page failed | page=%d | %s", page_index, error)
                    break

                self._generation.check(token)
                self.source.append(page_index, page)
                found = filter_records(self.source.records, normalized)
        except StaleResultError as e:
            return self._superseded(query, e)

        results = search_records(found, normalized, max_results)
        self._is_searching = False
        logger.info(
            "Search | q=%s | found=%d | pages=%d | attempts=%d",
            normalized[:40], len(found), self.source.loaded_pages, attempts,
        )
        return SearchResult(
            query=query,
            results=[r.payload for r in results],
            found_count=len(found),
            error=error,
            progress=self.progress(len(found)),
        )

    def schedule_search(self, query: str, max_results: int | None = None) -> None:
        """Debounced search. The result is published to subscribers."""
        self._cancel_pending()
        self._query = query

        if len(query.strip()) < self.min_query_length:
            self._generation.next()
            self._is_searching = False
            self._observers.notify(SearchResult(query=query, progress=self.progress()))
            return

        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(
            self.debounce_ms / 1000, self._run_scheduled, query, max_results,
        )

    def clear_search(self) -> None:
        """Cancel any pending debounced search and drop in-flight results."""
        self._cancel_pending()
        self._generation.next()
        self._query = ""
        self._is_searching = False
        self._observers.notify(SearchResult(progress=self.progress()))

    async def refetch(self) -> None:
        """Forget loaded pages; the next search starts from page 0."""
        self._cancel_pending()
        self._generation.next()
        self._is_searching = False
        self.source.reset()
        logger.info("Search dataset reset")

    def _run_scheduled(self, query: str, max_results: int | None) -> None:
        self._pending = None
        task = asyncio.ensure_future(self._search_and_publish(query, max_results))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _search_and_publish(self, query: str, max_results: int | None) -> None:
        result = await self.search(query, max_results)
        if not result.superseded:
            self._observers.notify(result)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _superseded(self, query: str, stale: StaleResultError) -> SearchResult:
        logger.debug("Search stale page dropped | gen=%d | current=%d", stale.generation, stale.current)
        return SearchResult(query=query, superseded=True, is_searching=self._is_searching)
