"""
Storage for the FIB bearer token.

The client only needs get/set/delete with a TTL, so the backing store can be
swapped without touching it: an in-process dict for a single worker, or Redis
when several workers should share one token.
"""
import time
from typing import Dict, Optional, Protocol, Tuple

import redis


class TokenCache(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryTokenCache:
    def __init__(self) -> None:
        # key -> (value, monotonic deadline)
        self._entries: Dict[str, Tuple[str, float]] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if time.monotonic() >= deadline:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, time.monotonic() + ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisTokenCache:
    def __init__(self, url: str = None, client=None) -> None:
        self._client = client if client is not None else redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key) or None

    def set(self, key: str, value: str, ttl: int) -> None:
        self._client.setex(key, ttl, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)


def build_token_cache(redis_url: Optional[str] = None) -> TokenCache:
    if redis_url:
        return RedisTokenCache(redis_url)
    return InMemoryTokenCache()
