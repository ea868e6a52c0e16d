"""Shared fixtures: a virtual clock and stand-in generators.

The pipeline takes its flip wait as an injectable coroutine. Tests pass
``VirtualTime.sleep`` so that simulated seconds elapse per flip without wall
time, which keeps timing assertions deterministic.
"""

import asyncio

import pytest

from shuffler.collaborators import Generator
from shuffler.config import ShufflerConfig


class VirtualTime:
    """Simulated clock advanced only by the pipeline's flip waits.

    Attributes:
        now: Simulated seconds elapsed
        waits: Number of sleep() calls
        listeners: Callables invoked with dt after every advance
    """

    def __init__(self):
        self.now = 0.0
        self.waits = 0
        self.listeners = []

    async def sleep(self, dt: float) -> None:
        self.now += dt
        self.waits += 1
        for listener in self.listeners:
            listener(dt)
        await asyncio.sleep(0)

    async def run_until(self, deadline: float, max_yields: int = 200_000) -> None:
        """Yield to the event loop until simulated time reaches ``deadline``."""
        for _ in range(max_yields):
            if self.now >= deadline:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"virtual time stuck at {self.now} (deadline {deadline})")


class OverlapTracking(Generator):
    """Counts generate() calls that are running at the same time.

    Attributes:
        active: Calls currently inside generate()
        peak_active: Highest ``active`` observed
    """

    active = 0
    peak_active = 0

    async def generate(self, source_image, params, destination, cancel_event):
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            await self.run(source_image, params, destination, cancel_event)
        finally:
            self.active -= 1

    async def run(self, source_image, params, destination, cancel_event):
        raise NotImplementedError


class InstantGenerator(OverlapTracking):
    """Writes a constant image and returns without suspending."""

    def __init__(self, value: float = 1.0):
        self.value = value
        self.calls = []

    async def run(self, source_image, params, destination, cancel_event):
        self.calls.append(params)
        destination.tensor.fill_(self.value)


class FailingGenerator(OverlapTracking):
    """Raises on every call."""

    def __init__(self):
        self.calls = 0

    async def run(self, source_image, params, destination, cancel_event):
        self.calls += 1
        raise RuntimeError("backend unavailable")


class SlowGenerator(OverlapTracking):
    """Finishes ``latency`` simulated seconds after it starts."""

    def __init__(self, clock: VirtualTime, latency: float):
        self.clock = clock
        self.latency = latency
        self.calls = 0
        self.completed = 0

    async def run(self, source_image, params, destination, cancel_event):
        self.calls += 1
        deadline = self.clock.now + self.latency
        while self.clock.now < deadline:
            if cancel_event.is_set():
                raise asyncio.CancelledError("cancel event set")
            await asyncio.sleep(0)
        destination.tensor.fill_(1.0)
        self.completed += 1


@pytest.fixture
def vt():
    return VirtualTime()


@pytest.fixture
def make_config():
    """Small-geometry config factory with fast, test-friendly timing."""

    def _make(**overrides):
        values = dict(
            flip_interval=0.1,
            reveal_interval=1.0,
            insertion_count=5,
            pool_size=4,
            image_width=4,
            image_height=4,
            channels=1,
            display_fps=100,
        )
        values.update(overrides)
        return ShufflerConfig(**values)

    return _make


@pytest.fixture
def instant_generator():
    return InstantGenerator()


@pytest.fixture
def failing_generator():
    return FailingGenerator()


@pytest.fixture
def slow_generator(vt):
    def _make(latency: float):
        return SlowGenerator(vt, latency)

    return _make
