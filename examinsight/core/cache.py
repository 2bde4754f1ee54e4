"""
Key-value stores with expiry, shared by the snapshot locks and the AI commentary cache.

Two implementations share one interface: an in-process map guarded by a mutex,
and Redis for multi-process deployments. Both treat an expired entry as absent.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

import redis

from .errors import PersistenceError

logger = logging.getLogger(__name__)

_DELETE_IF_EQUALS = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_EXPIRE_IF_EQUALS = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class KeyValueStore:
    """Interface for the expiring key-value store."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: Optional[float] = None, nx: bool = False) -> bool:
        """Store a value. With ``nx`` only when the key is absent or expired."""
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete the key only while it still holds ``value``."""
        raise NotImplementedError

    def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        """Reset the expiry only while the key still holds ``value``."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """In-process store; entries are (expires_at, value) pairs."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Optional[float], str]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl: Optional[float] = None, nx: bool = False) -> bool:
        with self._lock:
            if nx and self._live(key) is not None:
                return False
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (expires_at, value)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live(key) != value:
                return False
            del self._data[key]
            return True

    def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._live(key) != value:
                return False
            self._data[key] = (self._clock() + ttl, value)
            return True

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisStore(KeyValueStore):
    """Redis-backed store. Read errors degrade to a miss, write errors raise PersistenceError."""

    def __init__(self, url: str = None, client: redis.Redis = None):
        self.client = client or redis.Redis.from_url(url, decode_responses=True)
        self._delete_if_equals = self.client.register_script(_DELETE_IF_EQUALS)
        self._expire_if_equals = self.client.register_script(_EXPIRE_IF_EQUALS)

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.error(f"Cache get error for {key}: {e}")
            return None

    def set(self, key: str, value: str, ttl: Optional[float] = None, nx: bool = False) -> bool:
        px = int(ttl * 1000) if ttl else None
        try:
            return bool(self.client.set(key, value, px=px, nx=nx))
        except redis.RedisError as e:
            raise PersistenceError(f"Cache set failed for {key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(key))
        except redis.RedisError as e:
            raise PersistenceError(f"Cache delete failed for {key}: {e}") from e

    def delete_if_equals(self, key: str, value: str) -> bool:
        try:
            return bool(self._delete_if_equals(keys=[key], args=[value]))
        except redis.RedisError as e:
            raise PersistenceError(f"Cache release failed for {key}: {e}") from e

    def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        try:
            return bool(self._expire_if_equals(keys=[key], args=[value, int(ttl * 1000)]))
        except redis.RedisError as e:
            raise PersistenceError(f"Cache extend failed for {key}: {e}") from e

    def close(self) -> None:
        self.client.close()
