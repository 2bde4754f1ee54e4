import time

from examinsight.core.cache import MemoryStore
from examinsight.core.locks import KeyedLock


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_memory_store_expiry():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    store.set("a", "1", ttl=10)
    store.set("b", "2")
    clock.now += 10
    assert store.get("a") is None
    assert store.get("b") == "2"


def test_memory_store_set_nx():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    assert store.set("k", "first", ttl=5, nx=True)
    assert not store.set("k", "second", nx=True)
    clock.now += 5
    assert store.set("k", "third", nx=True)
    assert store.get("k") == "third"


def test_conditional_delete_and_expire():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    store.set("k", "owner", ttl=5)
    assert not store.delete_if_equals("k", "intruder")
    assert store.expire_if_equals("k", "owner", 60)
    clock.now += 30
    assert store.get("k") == "owner"
    assert store.delete_if_equals("k", "owner")
    assert store.get("k") is None


def test_lock_is_exclusive_until_released():
    lock = KeyedLock(MemoryStore(), "snapshot-lock", ttl_seconds=30)
    token = lock.acquire("E1:s1")
    assert token
    assert lock.is_locked("E1:s1")
    assert lock.acquire("E1:s1") is None
    assert lock.acquire("E1:s2") is not None
    assert lock.release("E1:s1", token)
    assert not lock.is_locked("E1:s1")


def test_only_the_owner_can_release():
    lock = KeyedLock(MemoryStore(), "p", ttl_seconds=30)
    token = lock.acquire("k")
    assert not lock.release("k", "not-the-owner")
    assert lock.is_locked("k")
    assert lock.release("k", token)


def test_expired_lock_can_be_taken_over():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    lock = KeyedLock(store, "p", ttl_seconds=10)
    stale = lock.acquire("k")
    clock.now += 11
    fresh = lock.acquire("k")
    assert fresh and fresh != stale
    # the old owner's late release leaves the new lock alone
    assert not lock.release("k", stale)
    assert lock.is_locked("k")


def test_extend_keeps_the_lock_alive():
    clock = FakeClock()
    lock = KeyedLock(MemoryStore(clock=clock), "p", ttl_seconds=10)
    token = lock.acquire("k")
    clock.now += 8
    assert lock.extend("k", token)
    clock.now += 8
    assert lock.is_locked("k")
    assert not lock.extend("k", "someone-else")


def test_renewing_keeps_the_lock_past_its_ttl():
    lock = KeyedLock(MemoryStore(), "p", ttl_seconds=0.2)
    token = lock.acquire("k")
    with lock.renewing("k", token, interval_seconds=0.05):
        time.sleep(0.5)
        assert lock.acquire("k") is None
    assert lock.release("k", token)
