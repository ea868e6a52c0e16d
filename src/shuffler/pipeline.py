"""Shuffler pipeline - the single control loop behind the flip display.

This module implements the ShufflerPipeline class that:
- Allocates every buffer once at startup (slots first, then queue buffers)
- Keeps the fast flip cadence fed from cheap source copies (stock queue)
- Overlaps one slow generation with the flipping and integrates its result
  into the reveal slot once the stock queue has drained
- Cancels the in-flight generation and releases every buffer at shutdown

One outer cycle:
    1. Drain stock: rotate each banked buffer into next/current, wait one flip
    2. Integrate a finished generation into the reveal slot (non-blocking poll)
    3. Admission: maybe start the next generation
    4. Refill: while more than one buffer is free, cheap-fill one, wait one
       flip, bank it

Only this loop mutates queues and slots. The presentation tick reads them and
advances the animation clock independently.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from shuffler.buffers import Buffer, BufferPool
from shuffler.clock import AnimationClock
from shuffler.collaborators import Compositor, Generator, ImageSource
from shuffler.config import ShufflerConfig
from shuffler.errors import InvariantViolation, OwnershipError, ShufflerInitializationError
from shuffler.frame_state import FrameState
from shuffler.generation import (
    GenerationCoordinator,
    GenerationOutcome,
    GenerationResult,
    SeedContext,
)
from shuffler.lifecycle import (
    FrameResources,
    allocate_frame_resources,
    release_frame_resources,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    """Counters accumulated over the life of a pipeline.

    Attributes:
        cycles: Outer loop iterations
        flip_steps: flip_interval suspensions (rotations, fills and idle waits)
        rotations: Stock buffers rotated into the flip pair
        cheap_fills: Source copies made into free buffers
        stock_drains: Drain phases that emptied a non-empty stock queue
        refills: Refill phases that banked at least one buffer
        reveals: Generation results integrated into the reveal slot
        generation_failures: Results discarded because the generator raised
        generation_cancellations: Results discarded because of cancellation
        buffers_released: Buffers disposed at shutdown
    """

    cycles: int = 0
    flip_steps: int = 0
    rotations: int = 0
    cheap_fills: int = 0
    stock_drains: int = 0
    refills: int = 0
    reveals: int = 0
    generation_failures: int = 0
    generation_cancellations: int = 0
    buffers_released: int = 0


class ShufflerPipeline:
    """Slow-producer / fast-consumer scheduler with banked buffers.

    Example:
        >>> pipeline = ShufflerPipeline(config, generator, source, compositor)
        >>> async with pipeline:
        ...     await asyncio.sleep(10)
        >>> print(pipeline.stats.reveals)
    """

    def __init__(
        self,
        config: ShufflerConfig,
        generator: Generator,
        source: ImageSource,
        compositor: Compositor,
        seeds: SeedContext | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize pipeline. No buffers are allocated until initialize().

        Args:
            config: Immutable scheduler configuration
            generator: Slow generation collaborator
            source: Source image collaborator
            compositor: Copy/draw collaborator
            seeds: Seed context for generation requests (default: from config)
            sleep: Coroutine used for flip waits
        """
        self.config = config
        self.generator = generator
        self.source = source
        self.compositor = compositor
        self.seeds = seeds or SeedContext.from_config(config.seed)
        self._sleep = sleep

        self.clock = AnimationClock.from_config(config)
        self.stats = PipelineStats()

        self.resources: FrameResources | None = None
        self.coordinator: GenerationCoordinator | None = None
        self._filling: Buffer | None = None
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pool(self) -> BufferPool:
        return self.resources.pool

    @property
    def state(self) -> FrameState:
        return self.resources.state

    @property
    def active(self) -> bool:
        """True between initialize() and shutdown()."""
        return self.resources is not None and not self.resources.pool.closed

    def initialize(self) -> None:
        """Allocate every buffer and create the generation coordinator.

        Raises:
            ShufflerInitializationError: If called twice or allocation fails
        """
        if self.resources is not None:
            raise ShufflerInitializationError("Pipeline already initialized")

        self.resources = allocate_frame_resources(self.config)
        self.coordinator = GenerationCoordinator(
            generator=self.generator,
            pool=self.pool,
            params=self.config.generation,
            policy=self.config.admission_policy,
            threshold=self.config.effective_admission_threshold,
            seeds=self.seeds,
        )
        self._check_ownership("initialize")

        logger.info(
            "Shuffler pipeline initialized",
            extra={
                "flip_interval": self.config.flip_interval,
                "reveal_interval": self.config.reveal_interval,
                "insertion_count": self.config.insertion_count,
                "admission_policy": self.config.admission_policy,
                "capacity": self.pool.capacity,
            },
        )

    def start(self) -> asyncio.Task:
        """Initialize if needed and run the loop as a background task."""
        if self._task is not None and not self._task.done():
            raise InvariantViolation("Pipeline loop is already running")
        if self.resources is None:
            self.initialize()
        self._task = asyncio.create_task(self.run(), name="shuffler-pipeline")
        return self._task

    async def shutdown(self) -> int:
        """Stop the loop, cancel the in-flight generation, release every buffer.

        Returns:
            Number of buffers released (0 if already shut down)
        """
        if not self.active:
            return 0

        try:
            await self._stop_loop()
        finally:
            try:
                result = await self.coordinator.cancel()
                if result is not None:
                    self._discard(result)
                if self._filling is not None:
                    self.pool.release(self._filling)
                    self._filling = None
                self._check_ownership("shutdown")
            finally:
                released = release_frame_resources(self.resources)
                self.stats.buffers_released = released

        logger.info("Shuffler pipeline shut down", extra=dataclasses.asdict(self.stats))
        return released

    async def _stop_loop(self) -> None:
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        if task.done():
            if not task.cancelled():
                # Already logged by run(); mark it retrieved
                task.exception()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    async def __aenter__(self) -> ShufflerPipeline:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Pipeline loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run cycles until cancelled.

        Raises:
            InvariantViolation: On any scheduling bug; the loop stops
        """
        if self.resources is None:
            self.initialize()
        if self._task is None:
            self._task = asyncio.current_task()

        try:
            while True:
                await self.run_cycle()
        except asyncio.CancelledError:
            logger.info("Pipeline loop cancelled", extra={"cycles": self.stats.cycles})
            raise
        except InvariantViolation:
            logger.error("Pipeline loop aborted on invariant violation", exc_info=True)
            raise

    async def run_cycle(self) -> None:
        """One outer cycle: drain, integrate, admit, refill."""
        steps_before = self.stats.flip_steps

        await self._drain_stock()
        self._integrate()
        self._admit()
        await self._refill()

        # Nothing rotated or filled; still yield one flip so the loop never spins
        if self.stats.flip_steps == steps_before:
            await self._wait_flip()

        self.stats.cycles += 1

    async def _wait_flip(self) -> None:
        await self._sleep(self.config.flip_interval)
        self.stats.flip_steps += 1

    async def _drain_stock(self) -> None:
        rotated = 0
        while self.state.stock_count > 0:
            incoming = self.state.pop_stock()
            vacated = self.state.rotate(incoming)
            self.pool.release(vacated)
            self.clock.reset_flip()
            self.coordinator.note_flip()
            self.stats.rotations += 1
            rotated += 1
            self._check_ownership("rotate")
            await self._wait_flip()

        if rotated:
            self.stats.stock_drains += 1
            self.coordinator.note_stock_drained()

    def _integrate(self) -> None:
        result = self.coordinator.poll()
        if result is None:
            return

        if result.outcome is GenerationOutcome.SUCCEEDED:
            vacated = self.state.reveal(result.buffer)
            self.pool.release(vacated)
            self.clock.reset_reveal()
            self.stats.reveals += 1
            logger.debug(
                "Generation result integrated",
                extra={"request_id": result.request.request_id, "buffer": result.buffer.index},
            )
        else:
            self._discard(result)
        self.coordinator.acknowledge(result)
        self._check_ownership("integrate")

    def _discard(self, result: GenerationResult) -> None:
        """Recycle the buffer of a failed or cancelled generation."""
        self.pool.release(result.buffer)
        if result.outcome is GenerationOutcome.FAILED:
            self.stats.generation_failures += 1
        elif result.outcome is GenerationOutcome.CANCELLED:
            self.stats.generation_cancellations += 1

    def _admit(self) -> None:
        if self.coordinator.maybe_start(self.source):
            self._check_ownership("admit")

    async def _refill(self) -> None:
        filled = 0
        # One free buffer is always held back for the next generation
        while self.pool.free_count > 1:
            buffer = self.pool.acquire()
            self._filling = buffer
            self.compositor.copy(self.source.current_image(), buffer)
            self.stats.cheap_fills += 1
            try:
                await self._wait_flip()
            except asyncio.CancelledError:
                self._filling = None
                self.pool.release(buffer)
                raise
            self._filling = None
            self.state.push_stock(buffer)
            filled += 1
            self._check_ownership("refill")

        if filled:
            self.stats.refills += 1

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def in_flight_buffers(self) -> list[Buffer]:
        """Buffers held outside the queues and slots right now."""
        held = [self.coordinator.in_flight_buffer, self._filling]
        return [buffer for buffer in held if buffer is not None]

    def _check_ownership(self, transition: str) -> dict[str, int] | None:
        if not self.config.check_invariants:
            return None
        try:
            return self.state.census(self.pool, self.in_flight_buffers())
        except OwnershipError as e:
            logger.error(
                f"Buffer ownership broken after {transition}",
                extra={"counts": e.counts, "capacity": e.capacity},
            )
            raise
