from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def _geo_key(ip: str) -> str:
    # Hash so raw addresses never appear in the keyspace
    return f"geoip:{hashlib.sha256(ip.encode()).hexdigest()}"


class RedisGeoCache:
    """Redis-backed cache for GeoIP lookups shared across processes."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling GeoIP caching."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, ip: str) -> Optional[dict]:
        cached = await self.client.get(_geo_key(ip))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None

    async def set(self, ip: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(_geo_key(ip), json.dumps(payload), ex=max(1, ttl_seconds))

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryGeoCache:
    """Per-process TTL cache used when no Redis URL is configured."""

    def __init__(self, *, max_entries: int = 10000) -> None:
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[float, dict]] = {}
        self._lock = threading.Lock()

    async def get(self, ip: str) -> Optional[dict]:
        key = _geo_key(ip)
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            expires_at, payload = entry
            if expires_at <= time.monotonic():
                self._entries.pop(key, None)
                return None
            return dict(payload)

    async def set(self, ip: str, payload: dict, ttl_seconds: int) -> None:
        with self._lock:
            if len(self._entries) >= self.max_entries:
                # Evict the entries closest to expiry
                oldest = sorted(self._entries.items(), key=lambda item: item[1][0])
                for key, _ in oldest[: max(1, self.max_entries // 10)]:
                    self._entries.pop(key, None)
            self._entries[_geo_key(ip)] = (time.monotonic() + ttl_seconds, dict(payload))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
