"""Shared test fixtures and configuration."""

import asyncio
import os

import pytest

# Demo mode and the in-memory store during tests (no API, Redis or Postgres)
os.environ.setdefault("API_BASE_URL", "")
os.environ.setdefault("CACHE_BACKEND", "memory")

from smartmoney.errors import FetchError  # noqa: E402
from smartmoney.services.cache import TTLCache  # noqa: E402
from smartmoney.services.kv_store import MemoryKeyValueStore  # noqa: E402


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeProfileSource:
    """Records calls, tracks concurrency, and fails for chosen keys."""

    def __init__(self, failing: set[str] | None = None, delay: float = 0):
        self.failing = failing or set()
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, key: str) -> dict:
        self.calls.append(key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if key in self.failing:
                raise FetchError(key, f"boom {key}", status_code=500)
            return {"address": key, "user_name": f"user-{key}"}
        finally:
            self.in_flight -= 1


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FailingStore:
    """KeyValueStore whose every call raises StorageError."""

    def __init__(self):
        from smartmoney.errors import StorageError

        self._error = StorageError("store down")

    async def get(self, key):
        raise self._error

    async def get_many(self, keys):
        raise self._error

    async def put(self, key, value):
        raise self._error

    async def put_many(self, items):
        raise self._error

    async def delete_many(self, keys):
        raise self._error

    async def keys(self, prefix=""):
        raise self._error

    async def close(self):
        return None


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryKeyValueStore(maxsize=1000)


@pytest.fixture
def profile_cache(store, clock):
    return TTLCache(store, "profiles", 86400, clock)


@pytest.fixture
def source():
    return FakeProfileSource()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def sample_smart_wallet():
    """Sample /smart-wallets/{address} wallet entry."""
    return {
        "wallet_address": "0xABCDEF0000000000000000000000000000000001",
        "user_name": "AlphaWhale",
        "avatar_url": "https://example.com/a.png",
        "x_username": "alphawhale",
        "total_profit": "125000.55",
        "volume": "900000",
        "smart_score": 72.5,
        "roi_value": 1.35,
        "win_rate_value": 64.2,
        "rank_the_week": "3",
        "system_tags": ["god_level"],
    }


@pytest.fixture
def sample_trade():
    """Sample /trade/user/{address} item."""
    return {
        "id": 991,
        "txHash": "0xtx991",
        "marketId": 42,
        "marketTitle": "Yes",
        "rootMarketId": 7,
        "rootMarketTitle": "Fed cuts rates in December?",
        "side": "buy",
        "price": "0.6123",
        "shares": "1500",
        "profit": "12.5",
        "createdAt": 1_700_000_000_000,
    }


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def make_source():
    """Factory for FakeProfileSource with custom failures or latency."""
    return FakeProfileSource
