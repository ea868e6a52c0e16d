"""Startup allocation and shutdown release of frame resources.

Allocation order is fixed: the three display slots first, then the
free-queue buffers. After that the pool is sealed and nothing else is
allocated until shutdown, where every buffer is released in one pass
regardless of which queue or slot holds it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from shuffler.buffers import BufferPool
from shuffler.config import SLOT_COUNT, ShufflerConfig
from shuffler.frame_state import FrameState

logger = logging.getLogger(__name__)


@dataclass
class FrameResources:
    """Every buffer the pipeline uses, plus who holds it."""

    pool: BufferPool
    state: FrameState


def allocate_frame_resources(config: ShufflerConfig) -> FrameResources:
    """Allocate slot buffers, then queue buffers, and seal the pool.

    Raises:
        ShufflerInitializationError: If tensor allocation fails
    """
    pool = BufferPool(config.buffer_shape, device=config.device, dtype=config.torch_dtype)

    current, next_, revealed = pool.allocate(SLOT_COUNT, to_free_queue=False)
    pool.allocate(config.queue_buffer_count)
    pool.seal()

    logger.info(
        "Frame resources allocated",
        extra={
            "slot_buffers": SLOT_COUNT,
            "queue_buffers": config.queue_buffer_count,
            "capacity": pool.capacity,
        },
    )
    return FrameResources(pool=pool, state=FrameState(current, next_, revealed))


def release_frame_resources(resources: FrameResources) -> int:
    """Release every buffer and detach it from slots and stock.

    Partial release is not supported.

    Returns:
        Number of buffers disposed (0 if already released)
    """
    resources.state.clear()
    return resources.pool.close()
