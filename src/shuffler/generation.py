"""Generation coordinator: one slow generation at a time, overlapped with flipping.

The coordinator owns the single in-flight generation task. The pipeline loop
calls ``maybe_start()`` once per outer cycle and ``poll()`` to collect a
finished result without blocking. Hard invariant: at most one generation is
in flight, and at most one finished result is awaiting integration.

Admission policies:
- "threshold": start once ``threshold`` flips have happened since the last
  start (the very first generation is admitted immediately)
- "drained": start once the stock queue has fully drained since the last start

Outcome handling:
- SUCCEEDED: the destination buffer becomes the new reveal slot content
- FAILED: logged, destination recycled, cheap fills carry the display
- CANCELLED: shutdown path, destination recycled silently
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import random
import time
from dataclasses import dataclass, field

import torch

from shuffler.buffers import Buffer, BufferPool
from shuffler.collaborators import Generator, ImageSource
from shuffler.config import AdmissionPolicy, GenerationParams, SeedConfig
from shuffler.errors import GenerationInFlightError, PendingResultError

logger = logging.getLogger(__name__)

# Matches the seed range accepted by common diffusion backends
MAX_SEED = 2_000_000_000


class SeedContext:
    """Explicit source of generation seeds.

    Replaces global random state so that a run can be reproduced from its
    configuration alone.

    Example:
        >>> seeds = SeedContext(policy="random", base_seed=8943)
        >>> seed = seeds.next_seed(default=1)
    """

    def __init__(self, policy: str = "random", base_seed: int = 8943):
        self.policy = policy
        self._rng = random.Random(base_seed)

    @classmethod
    def from_config(cls, seed: SeedConfig) -> SeedContext:
        return cls(policy=seed.policy, base_seed=seed.base_seed)

    def next_seed(self, default: int) -> int:
        """Seed for the next request; the "fixed" policy always returns ``default``."""
        if self.policy == "fixed":
            return default
        return self._rng.randint(1, MAX_SEED)

    def spawn(self) -> random.Random:
        """Derive an independent, reproducible Random for a collaborator."""
        return random.Random(self._rng.getrandbits(32))


class GenerationOutcome(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class GenerationRequest:
    """One generation call, from start to resolution.

    Attributes:
        request_id: Monotonic request counter
        params: Parameters frozen at start time (including the drawn seed)
        destination: Buffer the generator writes into; owned by the request
            until it resolves
        cancel_event: Set at shutdown
        started_at: time.monotonic() at start
    """

    request_id: int
    params: GenerationParams
    destination: Buffer
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class GenerationResult:
    """A resolved request.

    Attributes:
        request: The originating request
        outcome: How it resolved
        elapsed_ms: Wall time from start to resolution
        error: Collaborator exception for FAILED outcomes
    """

    request: GenerationRequest
    outcome: GenerationOutcome
    elapsed_ms: float
    error: BaseException | None = None

    @property
    def buffer(self) -> Buffer:
        return self.request.destination


class GenerationCoordinator:
    """Starts, tracks and resolves the single in-flight generation.

    Example:
        >>> coordinator = GenerationCoordinator(generator, pool, params)
        >>> coordinator.maybe_start(source)
        True
        >>> result = coordinator.poll()  # None until the task finishes
    """

    def __init__(
        self,
        generator: Generator,
        pool: BufferPool,
        params: GenerationParams,
        policy: AdmissionPolicy = "threshold",
        threshold: int = 5,
        seeds: SeedContext | None = None,
    ):
        """Initialize coordinator.

        Args:
            generator: Generation collaborator
            pool: Pool the destination buffers are borrowed from
            params: Default generation parameters
            policy: Admission policy ("threshold" or "drained")
            threshold: Flips between starts for the "threshold" policy
            seeds: Seed source (default: random policy, fixed base seed)
        """
        self.generator = generator
        self.pool = pool
        self.params = params
        self.policy = policy
        self.threshold = threshold
        self.seeds = seeds or SeedContext()

        # Staging copy of the source so later cheap fills cannot alter the input
        self._input = torch.zeros(pool.shape, device=pool.device, dtype=pool.dtype)

        self._task: asyncio.Task | None = None
        self._request: GenerationRequest | None = None
        self._pending: GenerationResult | None = None
        self._next_id = 0

        # Admission bookkeeping; the first request is admitted immediately
        self._flips_since_start = threshold
        self._drained_since_start = True

        self.started = 0
        self.succeeded = 0
        self.failed = 0
        self.cancelled = 0

    @property
    def in_flight(self) -> bool:
        return self._request is not None

    @property
    def in_flight_buffer(self) -> Buffer | None:
        return self._request.destination if self._request is not None else None

    @property
    def pending(self) -> GenerationResult | None:
        return self._pending

    def note_flip(self) -> None:
        """Record one display rotation (threshold policy)."""
        self._flips_since_start += 1

    def note_stock_drained(self) -> None:
        """Record that the stock queue ran empty (drained policy)."""
        self._drained_since_start = True

    def admissible(self) -> bool:
        if self.in_flight or self._pending is not None:
            return False
        if self.policy == "drained":
            return self._drained_since_start
        return self._flips_since_start >= self.threshold

    def update_params(self, **changes) -> GenerationParams:
        """Replace default parameters for subsequent requests.

        A running request keeps the parameters it started with.
        """
        self.params = dataclasses.replace(self.params, **changes)
        logger.info("Generation parameters updated", extra={"changes": changes})
        return self.params

    def maybe_start(self, source: ImageSource) -> bool:
        """Start a generation if the admission policy allows it.

        The source is only read when a generation is admitted.

        Returns:
            True if a generation was started
        """
        if not self.admissible():
            return False
        self.start(source.current_image())
        return True

    def start(self, source_image: torch.Tensor) -> GenerationRequest:
        """Start a generation unconditionally.

        Raises:
            GenerationInFlightError: If a generation is already running
            PendingResultError: If the previous result has not been integrated
            PoolExhaustedError: If no buffer is free for the destination
        """
        if self.in_flight:
            raise GenerationInFlightError(
                f"Generation #{self._request.request_id} is still in flight"
            )
        if self._pending is not None:
            raise PendingResultError(
                f"Result of generation #{self._pending.request.request_id} "
                f"has not been integrated"
            )

        destination = self.pool.acquire()
        self._input.copy_(source_image)

        params = dataclasses.replace(self.params, seed=self.seeds.next_seed(self.params.seed))
        request = GenerationRequest(
            request_id=self._next_id, params=params, destination=destination
        )
        self._next_id += 1

        self._request = request
        self._task = asyncio.create_task(
            self.generator.generate(self._input, params, destination, request.cancel_event),
            name=f"shuffler-generation-{request.request_id}",
        )
        self._flips_since_start = 0
        self._drained_since_start = False
        self.started += 1

        logger.info(
            "Generation started",
            extra={
                "request_id": request.request_id,
                "seed": params.seed,
                "buffer": destination.index,
            },
        )
        return request

    def poll(self) -> GenerationResult | None:
        """Collect a finished generation without blocking.

        Returns:
            The resolved result, or None if nothing is running or it is still
            running. The caller owns the result buffer and must call
            ``acknowledge()`` once it has been integrated or recycled.

        Raises:
            PendingResultError: If a previous result is still unacknowledged
        """
        if self._task is None or not self._task.done():
            return None
        if self._pending is not None:
            raise PendingResultError(
                f"Result of generation #{self._pending.request.request_id} "
                f"has not been integrated"
            )
        result = self._resolve()
        self._pending = result
        return result

    def acknowledge(self, result: GenerationResult) -> None:
        """Mark a polled result as integrated or recycled."""
        if self._pending is not result:
            raise PendingResultError("Acknowledged result is not the pending one")
        self._pending = None

    async def cancel(self) -> GenerationResult | None:
        """Abort the in-flight generation and wait for it to stop.

        Returns:
            The resolved result (normally CANCELLED, but a generation that
            finished in the meantime keeps its outcome) or None if nothing
            was running. Its buffer is not yet recycled.
        """
        if self._task is None:
            return None

        self._request.cancel_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        except Exception:
            # Surfaced through _resolve()
            pass
        return self._resolve()

    def _resolve(self) -> GenerationResult:
        task = self._task
        request = self._request
        elapsed_ms = (time.monotonic() - request.started_at) * 1000
        self._task = None
        self._request = None

        if task.cancelled():
            self.cancelled += 1
            logger.info(
                "Generation cancelled",
                extra={"request_id": request.request_id, "elapsed_ms": elapsed_ms},
            )
            return GenerationResult(request, GenerationOutcome.CANCELLED, elapsed_ms)

        error = task.exception()
        if error is not None:
            self.failed += 1
            logger.warning(
                f"Generation #{request.request_id} failed: {error}",
                exc_info=error,
                extra={"request_id": request.request_id, "elapsed_ms": elapsed_ms},
            )
            return GenerationResult(request, GenerationOutcome.FAILED, elapsed_ms, error)

        self.succeeded += 1
        logger.info(
            "Generation finished",
            extra={"request_id": request.request_id, "elapsed_ms": elapsed_ms},
        )
        return GenerationResult(request, GenerationOutcome.SUCCEEDED, elapsed_ms)
