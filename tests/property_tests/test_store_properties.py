"""
Property-based tests for ConnectionStateStore.

Key properties:
- Every pending slot resolves at most once, whatever the interleaving
- Request ids are unique among live slots
- The client table holds exactly one entry per (address, client id)
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from iotscape.core.errors import UnknownRequestId
from iotscape.core.state import ConnectionStateStore

addresses = st.tuples(st.sampled_from(["10.0.0.1", "10.0.0.2"]), st.integers(1, 3))
client_ids = st.sampled_from(["", "alice", "bob"])

# each step resolves, fails or discards the slot at the given index
operations = st.lists(
    st.tuples(st.sampled_from(["resolve", "fail", "discard"]), st.integers(0, 9)),
    max_size=40,
)


@given(st.integers(1, 10), operations)
def test_slots_complete_at_most_once(slot_count: int, steps: list[tuple[str, int]]) -> None:
    store = ConnectionStateStore()
    ids = [store.register_pending() for _ in range(slot_count)]
    completed: set[str] = set()

    assert len(set(ids)) == slot_count

    for operation, index in steps:
        request_id = ids[index % slot_count]
        if operation == "discard":
            existed = store.discard_pending(request_id)
            assert existed == (request_id not in completed)
            completed.add(request_id)
            continue
        if request_id in completed:
            with pytest.raises(UnknownRequestId):
                if operation == "resolve":
                    store.resolve(request_id, index)
                else:
                    store.fail(request_id, RuntimeError("lost"))
            continue
        if operation == "resolve":
            store.resolve(request_id, index)
        else:
            store.fail(request_id, RuntimeError("lost"))
        completed.add(request_id)

    assert set(store.pending_ids()) == set(ids) - completed


@given(st.lists(st.tuples(addresses, client_ids), max_size=30))
def test_one_client_entry_per_key(contacts: list[tuple[tuple[str, int], str]]) -> None:
    store = ConnectionStateStore()

    for address, client_id in contacts:
        store.take_client(address, client_id)

    clients = store.clients()
    assert len(clients) == len(set(contacts))
    assert sum(handle.request_count for handle in clients) == len(contacts)
    assert len(store.client_addresses()) == len({address for address, _ in contacts})
