from __future__ import annotations

from typing import Iterable, List, Mapping, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from authsession.storage.errors import StorageError
from authsession.storage.memory import StagedWrite


class RedisStore:
    """Redis-backed key/value store for credentials and passport data.

    Every key is stored under ``namespace`` so several storage contexts can
    share one Redis database. Expiry uses native ``EX`` TTLs.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "authsession",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the session manager depends on it."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError(f"redis get failed: {exc}", {"key": key}) from exc

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.write_batch({key: (value, ttl_seconds)})

    async def delete(self, key: str) -> None:
        await self.write_batch({}, [key])

    async def delete_many(self, keys: Iterable[str]) -> None:
        await self.write_batch({}, keys)

    async def write_batch(
        self, writes: Mapping[str, StagedWrite], deletes: Iterable[str] = ()
    ) -> None:
        """Apply writes and deletes in one MULTI/EXEC transaction."""
        deletes = list(deletes)
        if not writes and not deletes:
            return
        pipe = self.client.pipeline(transaction=True)
        for key, (value, ttl_seconds) in writes.items():
            pipe.set(self._key(key), value, ex=ttl_seconds or None)
        if deletes:
            pipe.delete(*(self._key(key) for key in deletes))
        try:
            await pipe.execute()
        except RedisError as exc:
            raise StorageError(f"redis write failed: {exc}") from exc

    async def keys(self, prefix: str = "") -> List[str]:
        strip = len(self.namespace) + 1
        try:
            return [
                key[strip:]
                async for key in self.client.scan_iter(match=f"{self._key(prefix)}*")
            ]
        except RedisError as exc:
            raise StorageError(f"redis scan failed: {exc}") from exc

    async def close(self) -> None:
        await self.client.aclose()
