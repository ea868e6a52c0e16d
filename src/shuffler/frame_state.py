"""Display slots and the stock queue.

FrameState holds the buffers that are currently relevant to the display:

- ``current`` / ``next``: the flip pair crossfaded by the fast transition
- ``revealed``: the latest generation result, animated by the slow reveal
- ``stock``: FIFO of cheap-filled buffers banked ahead of display need

Every mutation is a swap: a buffer goes in, the displaced buffer comes out and
is handed back to the caller for recycling. Only the pipeline loop mutates
FrameState, so no locking is needed.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable

from shuffler.buffers import Buffer, BufferPool
from shuffler.errors import OwnershipError


class FrameState:
    """Slot buffers plus the stock FIFO.

    Example:
        >>> state = FrameState(current=a, next=b, revealed=c)
        >>> state.push_stock(d)
        >>> vacated = state.rotate(state.pop_stock())  # returns a
    """

    def __init__(self, current: Buffer, next: Buffer, revealed: Buffer):
        self.current: Buffer | None = current
        self.next: Buffer | None = next
        self.revealed: Buffer | None = revealed
        self._stock: deque[Buffer] = deque()

    @property
    def stock_count(self) -> int:
        return len(self._stock)

    def stock_buffers(self) -> tuple[Buffer, ...]:
        return tuple(self._stock)

    def slot_buffers(self) -> tuple[Buffer, Buffer, Buffer]:
        return (self.current, self.next, self.revealed)

    def push_stock(self, buffer: Buffer) -> None:
        self._stock.append(buffer)

    def pop_stock(self) -> Buffer:
        """Pop the oldest banked buffer.

        Raises:
            IndexError: If the stock queue is empty
        """
        return self._stock.popleft()

    def rotate(self, incoming: Buffer) -> Buffer:
        """Shift the flip pair: ``next`` becomes ``current``, ``incoming`` becomes ``next``.

        Returns:
            The buffer that was ``current``; the caller recycles it
        """
        vacated = self.current
        self.current = self.next
        self.next = incoming
        return vacated

    def reveal(self, incoming: Buffer) -> Buffer:
        """Install a generation result in the reveal slot.

        Returns:
            The previous ``revealed`` buffer; the caller recycles it
        """
        vacated = self.revealed
        self.revealed = incoming
        return vacated

    def drain_stock(self) -> list[Buffer]:
        """Empty the stock queue and return its buffers (teardown only)."""
        drained = list(self._stock)
        self._stock.clear()
        return drained

    def clear(self) -> list[Buffer]:
        """Detach every slot and banked buffer (teardown only).

        Returns:
            The buffers that were held, slots first
        """
        held = [*self.slot_buffers(), *self.drain_stock()]
        self.current = self.next = self.revealed = None
        return held

    def census(self, pool: BufferPool, in_flight: Iterable[Buffer] = ()) -> dict[str, int]:
        """Count buffers per owner and verify exclusive ownership.

        Args:
            pool: Pool that owns every buffer
            in_flight: Buffers held by running generation or fill operations

        Returns:
            Buffers per owner: free, stock, slots, in_flight

        Raises:
            OwnershipError: If a buffer has two owners or the total does not
                equal the pool capacity
        """
        free = pool.free_buffers()
        stock = self.stock_buffers()
        slots = self.slot_buffers()
        flying = tuple(in_flight)

        counts = {
            "free": len(free),
            "stock": len(stock),
            "slots": len(slots),
            "in_flight": len(flying),
        }

        seen: set[int] = set()
        for buffer in (*free, *stock, *slots, *flying):
            if id(buffer) in seen:
                raise OwnershipError(
                    counts, pool.capacity, detail=f"buffer #{buffer.index} has two owners"
                )
            seen.add(id(buffer))

        if len(seen) != pool.capacity:
            raise OwnershipError(counts, pool.capacity)

        return counts
