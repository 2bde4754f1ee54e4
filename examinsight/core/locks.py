"""
Key-scoped locks with a TTL on top of a KeyValueStore.

A lock is a key holding a random owner token. It is acquired only when absent
or expired, released only by its owner, and expires on its own if the owner dies.
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Optional

from .cache import KeyValueStore
from .errors import PersistenceError

logger = logging.getLogger(__name__)

LOCK_ACQUIRED = "Lock acquired"
LOCK_BUSY = "Lock held by another owner"
LOCK_RELEASED = "Lock released"


class KeyedLock:
    def __init__(self, store: KeyValueStore, prefix: str, ttl_seconds: float):
        self.store = store
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def acquire(self, key: str) -> Optional[str]:
        """Return an owner token, or None when another owner holds a live lock."""
        token = uuid.uuid4().hex
        if self.store.set(self._key(key), token, ttl=self.ttl_seconds, nx=True):
            logger.debug(f"{LOCK_ACQUIRED}: {self._key(key)}")
            return token
        logger.debug(f"{LOCK_BUSY}: {self._key(key)}")
        return None

    def release(self, key: str, token: str) -> bool:
        released = self.store.delete_if_equals(self._key(key), token)
        if released:
            logger.debug(f"{LOCK_RELEASED}: {self._key(key)}")
        else:
            logger.warning(f"Lock {self._key(key)} expired or was taken over before release")
        return released

    def extend(self, key: str, token: str, ttl_seconds: Optional[float] = None) -> bool:
        return self.store.expire_if_equals(self._key(key), token, ttl_seconds or self.ttl_seconds)

    @contextmanager
    def renewing(self, key: str, token: str, interval_seconds: Optional[float] = None):
        """Keep a held lock alive while the block runs, extending it every third of its TTL."""
        interval = interval_seconds or self.ttl_seconds / 3
        done = threading.Event()

        def renew():
            while not done.wait(interval):
                try:
                    if not self.extend(key, token):
                        logger.warning(f"Lock {self._key(key)} was lost while renewing")
                        return
                except PersistenceError as e:
                    logger.error(f"Could not renew lock {self._key(key)}: {e}")
                    return

        renewer = threading.Thread(target=renew, name=f"lock-renew-{key}", daemon=True)
        renewer.start()
        try:
            yield
        finally:
            done.set()
            renewer.join()

    def is_locked(self, key: str) -> bool:
        return self.store.get(self._key(key)) is not None
