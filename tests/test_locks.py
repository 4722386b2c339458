import threading

import pytest

from iotscape.core.errors import LockOrderViolation
from iotscape.core.locks import (
    RECORD_RANK,
    STATS_RANK,
    STORE_RANK,
    OrderedLock,
    assert_no_locks_held,
    held_locks,
)
from iotscape.core.state import ConnectionStateStore


def test_documented_order_is_accepted() -> None:
    store = OrderedLock("store", STORE_RANK, instrumented=True)
    record = OrderedLock("record", RECORD_RANK, instrumented=True)
    stats = OrderedLock("stats", STATS_RANK, instrumented=True)

    with store, record, stats:
        assert held_locks() == ("store", "record", "stats")

    assert held_locks() == ()


def test_reverse_order_is_rejected() -> None:
    store = OrderedLock("store", STORE_RANK, instrumented=True)
    stats = OrderedLock("stats", STATS_RANK, instrumented=True)

    with stats:
        with pytest.raises(LockOrderViolation):
            store.acquire()

    assert held_locks() == ()


def test_reentrant_acquire_is_allowed() -> None:
    store = OrderedLock("store", STORE_RANK, instrumented=True)

    with store:
        with store:
            assert held_locks() == ("store", "store")
        assert held_locks() == ("store",)


def test_uninstrumented_locks_skip_checks() -> None:
    store = OrderedLock("store", STORE_RANK)
    stats = OrderedLock("stats", STATS_RANK)

    with stats, store:
        assert held_locks() == ()


def test_assert_no_locks_held() -> None:
    store = OrderedLock("store", STORE_RANK, instrumented=True)

    assert_no_locks_held("handler")
    with store:
        with pytest.raises(LockOrderViolation, match="handler"):
            assert_no_locks_held("handler")


def test_held_locks_are_per_thread() -> None:
    store = OrderedLock("store", STORE_RANK, instrumented=True)
    seen: list[tuple[str, ...]] = []

    with store:
        thread = threading.Thread(target=lambda: seen.append(held_locks()))
        thread.start()
        thread.join()

    assert seen == [()]


def test_instrumented_store_releases_everything() -> None:
    store = ConnectionStateStore(instrumented=True)
    request_id = store.register_pending()
    store.take_client(("127.0.0.1", 1), "c")
    store.resolve(request_id, "ok")

    assert store.wait(request_id, timeout=1.0) == "ok"
    assert held_locks() == ()
