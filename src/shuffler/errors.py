"""Exception types for the Shuffler frame pipeline.

Two families:
- InvariantViolation: scheduling bugs (pool exhausted, double release,
  double-start of generation). Fatal to the pipeline loop.
- ShufflerInitializationError / ConfigError: startup failures.

Generation cancellation and generation failure are NOT exceptions at the
pipeline level; they are recovered locally and reported as outcomes.
"""

from __future__ import annotations


class ShufflerError(Exception):
    """Base class for Shuffler errors."""

    pass


class ConfigError(ShufflerError, ValueError):
    """Raised when configuration values are missing or out of range."""

    pass


class ShufflerInitializationError(ShufflerError):
    """Raised when frame resources cannot be allocated at startup.

    Attributes:
        reason: Human-readable description of the failure
        buffer_count: Number of buffers requested (if known)
    """

    def __init__(self, reason: str, buffer_count: int | None = None):
        self.reason = reason
        self.buffer_count = buffer_count
        if buffer_count is not None:
            message = f"{reason} (requested {buffer_count} buffers)"
        else:
            message = reason
        super().__init__(message)


class InvariantViolation(ShufflerError, RuntimeError):
    """Scheduling invariant broken. The pipeline loop aborts on these."""

    pass


class PoolExhaustedError(InvariantViolation):
    """Raised when acquire() is called on an empty free queue.

    The pool is sized for the worst case at startup, so this always indicates
    a scheduling bug rather than a transient condition.

    Attributes:
        capacity: Total number of buffers owned by the pool
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"Buffer pool exhausted: free queue empty (capacity={capacity})")


class DoubleReleaseError(InvariantViolation):
    """Raised when a buffer is released while already free, foreign or disposed."""

    def __init__(self, buffer_index: int, reason: str):
        self.buffer_index = buffer_index
        self.reason = reason
        super().__init__(f"Cannot release buffer #{buffer_index}: {reason}")


class GenerationInFlightError(InvariantViolation):
    """Raised when a generation is started while another one is in flight."""

    pass


class PendingResultError(InvariantViolation):
    """Raised when a second generation result arrives before the first is integrated."""

    pass


class OwnershipError(InvariantViolation):
    """Raised when the buffer census does not add up.

    Attributes:
        counts: Buffers per owner (free, stock, slots, in_flight)
        capacity: Expected total
    """

    def __init__(self, counts: dict[str, int], capacity: int, detail: str = ""):
        self.counts = counts
        self.capacity = capacity
        total = sum(counts.values())
        message = f"Buffer ownership census failed: {counts} sums to {total}, expected {capacity}"
        if detail:
            message = f"{message}; {detail}"
        super().__init__(message)
