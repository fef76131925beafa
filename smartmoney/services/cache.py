"""TTL cache over a pluggable key-value store.

Each TTLCache owns a namespace on the shared store, so caches with different
lifetimes can live side by side:
  - profiles: 24h
  - followed profiles: 30 days
  - search pages: 5 minutes

Expiry is lazy. A read that finds an expired entry deletes it and reports a
miss; evict_expired() sweeps a whole namespace on demand.

Graceful degradation: StorageError from the store never propagates. Reads
become misses and writes become no-ops, so callers just refetch.
"""

import logging
from typing import Any, Iterable

from pydantic import BaseModel, Field, ValidationError

from smartmoney.errors import StorageError
from smartmoney.services.clock import Clock, SystemClock
from smartmoney.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class CacheEntry(BaseModel):
    """A cached payload with its creation and expiration timestamps (epoch seconds)."""
    key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def normalize_key(key: str) -> str:
    """Keys compare case-insensitively (wallet addresses arrive in mixed case)."""
    return key.strip().lower()


class TTLCache:
    """Namespaced cache of CacheEntry objects with a fixed TTL."""

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str,
        ttl_seconds: int,
        clock: Clock | None = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store = store
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()
        self._prefix = f"{namespace}:"
        self._stats = {"hits": 0, "misses": 0, "expired": 0, "storage_errors": 0}

    def _store_key(self, key: str) -> str:
        return f"{self._prefix}{normalize_key(key)}"

    def build_entry(self, key: str, payload: dict[str, Any]) -> CacheEntry:
        """Stamp a payload with created_at = now and expires_at = now + TTL."""
        now = self._clock.now()
        return CacheEntry(
            key=normalize_key(key),
            payload=payload,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )

    async def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for key, or None (purging it if expired)."""
        store_key = self._store_key(key)
        try:
            raw = await self._store.get(store_key)
        except StorageError as e:
            self._storage_failed("get", e)
            return None

        if raw is None:
            self._stats["misses"] += 1
            return None

        entry = self._parse(store_key, raw)
        if entry is None or entry.is_expired(self._clock.now()):
            self._stats["expired"] += 1
            self._stats["misses"] += 1
            logger.debug("Cache expired | ns=%s | key=%s", self.namespace, normalize_key(key))
            try:
                await self._store.delete_many([store_key])
            except StorageError as e:
                self._storage_failed("delete", e)
            return None

        self._stats["hits"] += 1
        return entry

    async def get_many(self, keys: Iterable[str]) -> dict[str, CacheEntry]:
        """Batch lookup. Only live hits are returned, keyed by normalized key."""
        normalized = list(dict.fromkeys(normalize_key(k) for k in keys))
        if not normalized:
            return {}

        try:
            raw_map = await self._store.get_many([self._prefix + k for k in normalized])
        except StorageError as e:
            self._storage_failed("get_many", e)
            return {}

        now = self._clock.now()
        hits: dict[str, CacheEntry] = {}
        expired_keys: list[str] = []
        for store_key, raw in raw_map.items():
            entry = self._parse(store_key, raw)
            if entry is None or entry.is_expired(now):
                expired_keys.append(store_key)
                continue
            key = store_key[len(self._prefix):]
            hits[key] = entry if entry.key == key else entry.model_copy(update={"key": key})

        if expired_keys:
            self._stats["expired"] += len(expired_keys)
            try:
                await self._store.delete_many(expired_keys)
            except StorageError as e:
                self._storage_failed("delete_many", e)
            logger.debug("Cache purged expired | ns=%s | count=%d", self.namespace, len(expired_keys))

        self._stats["hits"] += len(hits)
        self._stats["misses"] += len(normalized) - len(hits)
        logger.debug("Cache batch | ns=%s | hits=%d/%d", self.namespace, len(hits), len(normalized))
        return hits

    async def put(self, entry: CacheEntry) -> None:
        entry = self._normalized(entry)
        try:
            await self._store.put(self._store_key(entry.key), entry.model_dump())
        except StorageError as e:
            self._storage_failed("put", e)

    async def put_many(self, entries: Iterable[CacheEntry]) -> int:
        """Write entries in one store call. Returns how many were written."""
        normalized = [self._normalized(e) for e in entries]
        items = {self._store_key(e.key): e.model_dump() for e in normalized}
        if not items:
            return 0
        try:
            await self._store.put_many(items)
        except StorageError as e:
            self._storage_failed("put_many", e)
            return 0
        logger.debug("Cache batch saved | ns=%s | count=%d", self.namespace, len(items))
        return len(items)

    async def is_valid(self, key: str) -> bool:
        """True if a live entry exists. Does not purge."""
        try:
            raw = await self._store.get(self._store_key(key))
        except StorageError as e:
            self._storage_failed("is_valid", e)
            return False
        if raw is None:
            return False
        entry = self._parse(self._store_key(key), raw)
        return entry is not None and not entry.is_expired(self._clock.now())

    async def filter_needing_fetch(self, keys: Iterable[str]) -> list[str]:
        """Keys without a live entry, in input order. All keys if the store is down."""
        keys = list(keys)
        try:
            raw_map = await self._store.get_many([self._store_key(k) for k in keys])
        except StorageError as e:
            self._storage_failed("filter", e)
            return keys

        now = self._clock.now()
        valid = set()
        for store_key, raw in raw_map.items():
            entry = self._parse(store_key, raw)
            if entry is not None and not entry.is_expired(now):
                valid.add(store_key)
        return [k for k in keys if self._store_key(k) not in valid]

    async def evict_expired(self) -> int:
        """Delete every expired entry in this namespace. Returns the count removed."""
        try:
            store_keys = await self._store.keys(self._prefix)
            if not store_keys:
                return 0
            raw_map = await self._store.get_many(store_keys)
            now = self._clock.now()
            expired = []
            for store_key, raw in raw_map.items():
                entry = self._parse(store_key, raw)
                if entry is None or entry.is_expired(now):
                    expired.append(store_key)
            if expired:
                await self._store.delete_many(expired)
        except StorageError as e:
            self._storage_failed("evict_expired", e)
            return 0

        if expired:
            self._stats["expired"] += len(expired)
            logger.info("Cache cleanup | ns=%s | removed=%d", self.namespace, len(expired))
        return len(expired)

    async def invalidate(self, keys: Iterable[str]) -> None:
        store_keys = [self._store_key(k) for k in keys]
        if not store_keys:
            return
        try:
            await self._store.delete_many(store_keys)
        except StorageError as e:
            self._storage_failed("invalidate", e)

    async def clear(self) -> int:
        """Remove every entry in this namespace, live or not."""
        try:
            store_keys = await self._store.keys(self._prefix)
            if store_keys:
                await self._store.delete_many(store_keys)
        except StorageError as e:
            self._storage_failed("clear", e)
            return 0
        logger.info("Cache cleared | ns=%s | count=%d", self.namespace, len(store_keys))
        return len(store_keys)

    def stats(self) -> dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = (self._stats["hits"] / total * 100) if total else 0.0
        return {
            "namespace": self.namespace,
            "ttl_seconds": self.ttl_seconds,
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
        }

    def _parse(self, store_key: str, raw: dict[str, Any]) -> CacheEntry | None:
        """Decode a stored entry. None for anything that is not a CacheEntry."""
        try:
            return CacheEntry(**raw)
        except (ValidationError, TypeError):
            logger.warning("Cache entry unreadable | ns=%s | key=%s", self.namespace, store_key)
            return None

    @staticmethod
    def _normalized(entry: CacheEntry) -> CacheEntry:
        key = normalize_key(entry.key)
        return entry if entry.key == key else entry.model_copy(update={"key": key})

    def _storage_failed(self, operation: str, error: StorageError) -> None:
        self._stats["storage_errors"] += 1
        logger.warning(
            "Cache store unavailable — treating as miss | ns=%s | op=%s | %s",
            self.namespace, operation, str(error)[:100],
        )
