"""Batch fetch orchestrator — bounded-concurrency fetch with per-key isolation.

Keys are split into consecutive windows of `concurrency`. All fetches in a
window run together and the window settles before the next one starts, so at
most `concurrency` requests are ever in flight. A short delay separates
windows to go easy on the remote API.

The orchestrator never writes the cache; callers decide what to keep.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from smartmoney.config import settings
from smartmoney.errors import FetchError
from smartmoney.orchestrator.schemas import BatchResult, FetchOutcome

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


class BatchFetchOrchestrator:
    """Fetch many keys through one fetcher, collecting successes and failures."""

    def __init__(
        self,
        fetcher: Fetcher,
        concurrency: int | None = None,
        inter_batch_delay_ms: int | None = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.concurrency = concurrency if concurrency is not None else settings.fetch_concurrency
        self.inter_batch_delay_ms = (
            inter_batch_delay_ms if inter_batch_delay_ms is not None else settings.inter_batch_delay_ms
        )
        self._sleep = sleep

    async def fetch_all(
        self,
        keys: list[str],
        concurrency: int | None = None,
        inter_batch_delay_ms: int | None = None,
    ) -> BatchResult:
        """Fetch every key; one FetchOutcome per distinct key, in input order."""
        concurrency = self.concurrency if concurrency is None else concurrency
        delay_ms = self.inter_batch_delay_ms if inter_batch_delay_ms is None else inter_batch_delay_ms
        if concurrency <= 0:
            raise ValueError(f"concurrency must be positive, got {concurrency}")

        unique_keys = list(dict.fromkeys(keys))
        if not unique_keys:
            return BatchResult()

        windows = [
            unique_keys[i:i + concurrency]
            for i in range(0, len(unique_keys), concurrency)
        ]

        start = time.monotonic()
        result = BatchResult(windows=len(windows))
        for index, window in enumerate(windows):
            settled = await asyncio.gather(
                *(self.fetcher(key) for key in window),
                return_exceptions=True,
            )
            for key, value in zip(window, settled):
                result.outcomes.append(self._to_outcome(key, value, result.errors))

            if index < len(windows) - 1 and delay_ms > 0:
                await self._sleep(delay_ms / 1000)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Batch fetch | keys=%d | windows=%d | failed=%d | %dms",
            len(unique_keys), len(windows), len(result.errors), elapsed_ms,
        )
        return result

    @staticmethod
    def _to_outcome(key: str, value: Any, errors: list[str]) -> FetchOutcome:
        if isinstance(value, BaseException):
            if not isinstance(value, Exception):
                # CancelledError and friends must keep propagating
                raise value
            error = value if isinstance(value, FetchError) else FetchError(key, str(value)[:200])
            message = str(error)
            errors.append(f"{key}: {message}")
            logger.warning("Batch fetch failed | key=%s | %s", key, message[:200])
            return FetchOutcome(key=key, error=message, status_code=error.status_code)

        if value is None:
            message = f"no data for {key}"
            errors.append(f"{key}: {message}")
            return FetchOutcome(key=key, error=message, status_code=404)

        return FetchOutcome(key=key, payload=value)
