"""Key-value stores backing the TTL cache.

Three interchangeable backends share one async protocol:
  - MemoryKeyValueStore: cachetools LRUCache, bounded, per process
  - RedisKeyValueStore: redis.asyncio, batched with MGET / MSET / DEL
  - SqlKeyValueStore: SQLAlchemy async over the cache_records table

Every backend failure (driver errors and dropped connections alike) surfaces
as StorageError. The stores know nothing about
expiry; TTL bookkeeping lives in the serialized entries (see services.cache).

Graceful degradation: if Redis or the database is unavailable at startup,
build_store() falls back to the in-memory store.
"""

import copy
import json
import logging
from typing import Any, Protocol

from cachetools import LRUCache
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from smartmoney.config import Settings
from smartmoney.errors import StorageError
from smartmoney.models.cache_records import CacheRecord

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def get_many(self, keys: list[str]) -> dict[str, dict[str, Any]]: ...

    async def put(self, key: str, value: dict[str, Any]) -> None: ...

    async def put_many(self, items: dict[str, dict[str, Any]]) -> None: ...

    async def delete_many(self, keys: list[str]) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...

    async def close(self) -> None: ...


# ═══════════════ MEMORY ═══════════════

class MemoryKeyValueStore:
    """In-process store. Least recently used keys are dropped past maxsize."""

    def __init__(self, maxsize: int = 10000):
        self._data: LRUCache = LRUCache(maxsize=maxsize)

    async def get(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def get_many(self, keys: list[str]) -> dict[str, dict[str, Any]]:
        found = {}
        for key in keys:
            value = self._data.get(key)
            if value is not None:
                found[key] = copy.deepcopy(value)
        return found

    async def put(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = copy.deepcopy(value)

    async def put_many(self, items: dict[str, dict[str, Any]]) -> None:
        for key, value in items.items():
            self._data[key] = copy.deepcopy(value)

    async def delete_many(self, keys: list[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in list(self._data.keys()) if k.startswith(prefix)]

    async def close(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


# ═══════════════ REDIS ═══════════════

def _decode(key: str, data: str) -> dict[str, Any]:
    """Unreadable values come back empty; the cache then purges them as expired."""
    try:
        value = json.loads(data)
    except ValueError:
        logger.warning("Redis value is not JSON | key=%s", key)
        return {}
    return value if isinstance(value, dict) else {}


class RedisKeyValueStore:
    """Redis store. Values are JSON strings; batch calls are single commands."""

    def __init__(self, client):
        self._redis = client

    @classmethod
    async def connect(cls, url: str) -> "RedisKeyValueStore":
        """Connect and ping. Raises StorageError if Redis is unreachable."""
        import redis.asyncio as aioredis

        client = aioredis.from_url(url, decode_responses=True, socket_connect_timeout=3)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise StorageError(f"redis unreachable: {str(e)[:100]}") from e
        logger.info("Redis store connected | url=%s", url.split("@")[-1])
        return cls(client)

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            data = await self._redis.get(key)
        except (RedisError, OSError) as e:
            raise StorageError(f"redis GET failed: {str(e)[:100]}") from e
        return _decode(key, data) if data else None

    async def get_many(self, keys: list[str]) -> dict[str, dict[str, Any]]:
        if not keys:
            return {}
        try:
            values = await self._redis.mget(keys)
        except (RedisError, OSError) as e:
            raise StorageError(f"redis MGET failed: {str(e)[:100]}") from e
        return {k: _decode(k, v) for k, v in zip(keys, values) if v}

    async def put(self, key: str, value: dict[str, Any]) -> None:
        try:
            await self._redis.set(key, json.dumps(value, ensure_ascii=False))
        except (RedisError, OSError) as e:
            raise StorageError(f"redis SET failed: {str(e)[:100]}") from e

    async def put_many(self, items: dict[str, dict[str, Any]]) -> None:
        if not items:
            return
        mapping = {k: json.dumps(v, ensure_ascii=False) for k, v in items.items()}
        try:
            await self._redis.mset(mapping)
        except (RedisError, OSError) as e:
            raise StorageError(f"redis MSET failed: {str(e)[:100]}") from e

    async def delete_many(self, keys: list[str]) -> None:
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except (RedisError, OSError) as e:
            raise StorageError(f"redis DEL failed: {str(e)[:100]}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        found = []
        try:
            async for key in self._redis.scan_iter(match=f"{prefix}*"):
                found.append(key)
        except (RedisError, OSError) as e:
            raise StorageError(f"redis SCAN failed: {str(e)[:100]}") from e
        return found

    async def close(self) -> None:
        await self._redis.aclose()


# ═══════════════ SQL ═══════════════

class SqlKeyValueStore:
    """Database-backed store over the cache_records table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> dict[str, Any] | None:
        found = await self.get_many([key])
        return found.get(key)

    async def get_many(self, keys: list[str]) -> dict[str, dict[str, Any]]:
        if not keys:
            return {}
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheRecord).where(CacheRecord.key.in_(keys))
                )
                return {row.key: row.value for row in result.scalars().all()}
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"sql select failed: {str(e)[:100]}") from e

    async def put(self, key: str, value: dict[str, Any]) -> None:
        await self.put_many({key: value})

    async def put_many(self, items: dict[str, dict[str, Any]]) -> None:
        if not items:
            return
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(CacheRecord).where(CacheRecord.key.in_(list(items)))
                    )
                    session.add_all([
                        CacheRecord(key=k, value=v, expires_at=v.get("expires_at"))
                        for k, v in items.items()
                    ])
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"sql upsert failed: {str(e)[:100]}") from e

    async def delete_many(self, keys: list[str]) -> None:
        if not keys:
            return
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(CacheRecord).where(CacheRecord.key.in_(keys)))
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"sql delete failed: {str(e)[:100]}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheRecord.key).where(CacheRecord.key.startswith(prefix, autoescape=True))
                )
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"sql scan failed: {str(e)[:100]}") from e

    async def close(self) -> None:
        from smartmoney.database import close_db

        await close_db()


async def build_store(config: Settings) -> KeyValueStore:
    """Create the configured store, degrading to memory if it is unreachable."""
    backend = config.cache_backend.lower()

    if backend == "redis":
        try:
            return await RedisKeyValueStore.connect(config.redis_url)
        except StorageError as e:
            logger.warning("Redis connection failed — using in-memory store: %s", str(e)[:100])
    elif backend == "sql":
        from smartmoney.database import get_session_factory, init_db

        if await init_db():
            return SqlKeyValueStore(get_session_factory())
        logger.warning("Database unavailable — using in-memory store")
    elif backend != "memory":
        logger.warning("Unknown cache backend %r — using in-memory store", backend)

    return MemoryKeyValueStore(maxsize=config.cache_max_entries)
