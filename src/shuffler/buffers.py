"""Fixed-size buffer pool for the frame pipeline.

All image buffers are allocated once at startup and recycled through a FIFO
free queue. Nothing is allocated at steady state: ``acquire()`` hands out the
head of the free queue and ``release()`` is the only path back to it.

Buffers are tracked by identity. A Buffer wraps a pre-allocated tensor of
shape (channels, height, width); its content is overwritten in place by the
cheap source copy or by the generation collaborator.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterator

import torch

from shuffler.errors import (
    DoubleReleaseError,
    PoolExhaustedError,
    ShufflerInitializationError,
)

logger = logging.getLogger(__name__)


class Buffer:
    """A reusable image surface.

    Equality is identity; two buffers with the same pixels are still
    different buffers.

    Attributes:
        index: Allocation order within the owning pool
        tensor: Backing storage, None once the buffer is disposed
    """

    __slots__ = ("index", "tensor")

    def __init__(self, index: int, tensor: torch.Tensor):
        self.index = index
        self.tensor: torch.Tensor | None = tensor

    @property
    def disposed(self) -> bool:
        return self.tensor is None

    def dispose(self) -> None:
        self.tensor = None

    def __repr__(self) -> str:
        state = "disposed" if self.disposed else tuple(self.tensor.shape)
        return f"<Buffer #{self.index} {state}>"


class BufferPool:
    """Owner of every Buffer in the pipeline.

    Lifecycle:
        1. ``allocate(n)`` one or more times during startup
        2. ``seal()`` once startup is done; no allocation after this
        3. ``acquire()`` / ``release()`` at steady state
        4. ``close()`` at shutdown disposes every buffer exactly once

    Example:
        >>> pool = BufferPool(shape=(3, 384, 640))
        >>> slots = pool.allocate(3, to_free_queue=False)
        >>> pool.allocate(9)
        >>> pool.seal()
        >>> buf = pool.acquire()
        >>> pool.release(buf)
    """

    def __init__(
        self,
        shape: tuple[int, ...],
        device: str = "cpu",
        dtype: torch.dtype = torch.float32,
    ):
        """Initialize an empty pool.

        Args:
            shape: Tensor shape for every buffer (channels, height, width)
            device: Torch device the buffers live on
            dtype: Tensor dtype
        """
        self.shape = tuple(shape)
        self.device = device
        self.dtype = dtype
        self._buffers: list[Buffer] = []
        self._free: deque[Buffer] = deque()
        self._free_ids: set[int] = set()
        self._owned_ids: set[int] = set()
        self._sealed = False
        self._closed = False

    @property
    def capacity(self) -> int:
        """Total number of buffers owned (constant once sealed)."""
        return len(self._buffers)

    @property
    def free_count(self) -> int:
        return len(self._free)

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def closed(self) -> bool:
        return self._closed

    def free_buffers(self) -> tuple[Buffer, ...]:
        """Snapshot of the free queue, head first."""
        return tuple(self._free)

    def __iter__(self) -> Iterator[Buffer]:
        return iter(self._buffers)

    def __contains__(self, buffer: object) -> bool:
        return id(buffer) in self._owned_ids

    def allocate(self, count: int, to_free_queue: bool = True) -> list[Buffer]:
        """Create ``count`` zero-filled buffers.

        Args:
            count: Number of buffers to create
            to_free_queue: Append the new buffers to the free queue. Pass False
                for buffers that go straight into display slots.

        Returns:
            The newly created buffers, in allocation order

        Raises:
            ShufflerInitializationError: If the pool is sealed or allocation fails
        """
        if self._sealed:
            raise ShufflerInitializationError(
                "Buffer pool is sealed; no allocation after startup", buffer_count=count
            )

        created: list[Buffer] = []
        try:
            for _ in range(count):
                tensor = torch.zeros(self.shape, device=self.device, dtype=self.dtype)
                created.append(Buffer(len(self._buffers) + len(created), tensor))
        except (RuntimeError, torch.cuda.OutOfMemoryError) as e:
            for buf in created:
                buf.dispose()
            logger.error("Buffer allocation failed", exc_info=True)
            raise ShufflerInitializationError(
                f"Failed to allocate {self.shape} buffers on {self.device}: {e}",
                buffer_count=count,
            ) from e

        self._buffers.extend(created)
        self._owned_ids.update(id(buf) for buf in created)
        if to_free_queue:
            for buf in created:
                self._free.append(buf)
                self._free_ids.add(id(buf))

        logger.debug(
            "Buffers allocated",
            extra={"count": count, "capacity": self.capacity, "free": self.free_count},
        )
        return created

    def seal(self) -> None:
        """Freeze the buffer count. Called once startup allocation is done."""
        self._sealed = True
        logger.info(
            "Buffer pool sealed",
            extra={
                "capacity": self.capacity,
                "free": self.free_count,
                "shape": self.shape,
                "device": self.device,
            },
        )

    def acquire(self) -> Buffer:
        """Remove and return the head of the free queue.

        Raises:
            PoolExhaustedError: If the free queue is empty
        """
        if not self._free:
            raise PoolExhaustedError(self.capacity)
        buffer = self._free.popleft()
        self._free_ids.discard(id(buffer))
        return buffer

    def release(self, buffer: Buffer) -> None:
        """Append a buffer to the free queue.

        Raises:
            DoubleReleaseError: If the buffer is already free, disposed, or not
                owned by this pool
        """
        if id(buffer) in self._free_ids:
            raise DoubleReleaseError(buffer.index, "already in the free queue")
        if buffer.disposed:
            raise DoubleReleaseError(buffer.index, "buffer has been disposed")
        if buffer not in self:
            raise DoubleReleaseError(buffer.index, "buffer does not belong to this pool")
        self._free.append(buffer)
        self._free_ids.add(id(buffer))

    def is_free(self, buffer: Buffer) -> bool:
        return id(buffer) in self._free_ids

    def close(self) -> int:
        """Dispose every buffer regardless of who currently holds it.

        Returns:
            Number of buffers disposed (0 on a repeated call)
        """
        if self._closed:
            return 0

        disposed = 0
        for buffer in self._buffers:
            if not buffer.disposed:
                buffer.dispose()
                disposed += 1
        self._free.clear()
        self._free_ids.clear()
        self._closed = True

        logger.info("Buffer pool closed", extra={"disposed": disposed})
        return disposed
