"""Unit tests for display slots, the stock queue and the ownership census."""

import pytest

from shuffler.buffers import BufferPool
from shuffler.errors import OwnershipError
from shuffler.frame_state import FrameState


@pytest.fixture
def setup():
    pool = BufferPool((1, 2, 2))
    slots = pool.allocate(3, to_free_queue=False)
    pool.allocate(4)
    pool.seal()
    return pool, FrameState(*slots)


def test_rotate_shifts_flip_pair(setup):
    """Test rotation moves next into current and returns the old current.

    Why: Each flip shows the following page and recycles the one flipped away
    Contract: (current, next) = (next, incoming); revealed untouched
    """
    pool, state = setup
    a, b, c = state.slot_buffers()
    incoming = pool.acquire()

    vacated = state.rotate(incoming)

    assert vacated is a
    assert state.current is b
    assert state.next is incoming
    assert state.revealed is c


def test_reveal_replaces_revealed_slot(setup):
    """Test integration swaps the reveal slot only.

    Why: A generation result never disturbs the flip pair
    Contract: returns the previous revealed buffer
    """
    pool, state = setup
    a, b, c = state.slot_buffers()
    result = pool.acquire()

    vacated = state.reveal(result)

    assert vacated is c
    assert state.revealed is result
    assert (state.current, state.next) == (a, b)


def test_stock_is_fifo(setup):
    """Test banked buffers come out in the order they were filled.

    Why: Cheap fills are shown in source order
    Contract: pop_stock returns oldest first; empty pop raises IndexError
    """
    pool, state = setup
    first, second = pool.acquire(), pool.acquire()
    state.push_stock(first)
    state.push_stock(second)

    assert state.stock_count == 2
    assert state.pop_stock() is first
    assert state.pop_stock() is second
    with pytest.raises(IndexError):
        state.pop_stock()


def test_census_counts_every_owner(setup):
    """Test census sums to pool capacity across all owners.

    Why: Buffer ownership is exclusive and conserved
    Contract: free + stock + slots + in_flight == capacity
    """
    pool, state = setup
    state.push_stock(pool.acquire())
    flying = pool.acquire()

    counts = state.census(pool, [flying])

    assert counts == {"free": 2, "stock": 1, "slots": 3, "in_flight": 1}
    assert sum(counts.values()) == pool.capacity


def test_census_detects_lost_buffer(setup):
    """Test a buffer held by nobody fails the census.

    Why: A leaked buffer would eventually exhaust the pool
    Contract: OwnershipError with counts and capacity
    """
    pool, state = setup
    pool.acquire()

    with pytest.raises(OwnershipError) as exc_info:
        state.census(pool)

    assert exc_info.value.capacity == 7
    assert sum(exc_info.value.counts.values()) == 6


def test_census_detects_two_owners(setup):
    """Test a buffer in two places at once fails the census.

    Why: Two owners means the same storage is written while displayed
    Contract: OwnershipError naming the duplicated buffer
    """
    pool, state = setup
    buf = pool.acquire()
    state.push_stock(buf)

    with pytest.raises(OwnershipError, match="two owners"):
        state.census(pool, [buf])


def test_drain_stock_empties_queue(setup):
    """Test teardown drain returns every banked buffer."""
    pool, state = setup
    banked = [pool.acquire(), pool.acquire()]
    for buf in banked:
        state.push_stock(buf)

    assert state.drain_stock() == banked
    assert state.stock_count == 0


def test_clear_detaches_slots_and_stock(setup):
    """Test teardown leaves no slot pointing at a buffer.

    Why: Slots must not reference disposed storage after shutdown
    Contract: returns slots then stock; all slots None; stock empty
    """
    pool, state = setup
    slots = state.slot_buffers()
    banked = pool.acquire()
    state.push_stock(banked)

    held = state.clear()

    assert held == [*slots, banked]
    assert state.slot_buffers() == (None, None, None)
    assert state.stock_count == 0
