"""End-to-end scenarios for the pipeline loop and presenter.

The loop runs as a real asyncio task. Its flip wait is the virtual clock from
conftest, which also ticks the presenter, so simulated seconds replace wall
time and the timing assertions are deterministic.

Test Coverage:
- Instant generator: periodic reveals and steady flipping
- Slow generator: cheap fills carry the display, no pool exhaustion
- Shutdown mid-generation and mid-fill: every buffer released exactly once
- Always-failing generator: reveal layer never drawn, loop keeps running
- Drained admission policy
- Invariant violation aborts the loop
"""

import asyncio

import pytest
import torch

from shuffler.buffers import Buffer
from shuffler.collaborators import TensorCompositor, TensorSource
from shuffler.errors import OwnershipError
from shuffler.pipeline import ShufflerPipeline
from shuffler.presenter import Presenter

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


def build(config, generator, vt):
    """Pipeline plus presenter, with the presenter ticked by the virtual clock."""
    source = TensorSource(torch.full(config.buffer_shape, 0.5))
    compositor = TensorCompositor(config.buffer_shape)
    pipeline = ShufflerPipeline(config, generator, source, compositor, sleep=vt.sleep)
    presenter = Presenter(pipeline, compositor)
    vt.listeners.append(presenter.tick)
    return pipeline, presenter


def record_reveal_times(pipeline, vt):
    times = []
    seen = [0]

    def listener(dt):
        if pipeline.stats.reveals > seen[0]:
            seen[0] = pipeline.stats.reveals
            times.append(vt.now)

    vt.listeners.append(listener)
    return times


async def test_instant_generator_reveals_once_per_window(make_config, instant_generator, vt):
    """Test steady state with a zero-latency generator.

    Why: With generation free, reveal cadence is set by the admission threshold
    Contract:
        - reveal slot updates roughly every reveal interval (1.0 s)
        - one flip step per flip interval, the loop never blocks
        - presenter draws the reveal layer
    """
    config = make_config(flip_interval=0.1, reveal_interval=1.0, insertion_count=5, pool_size=4)
    pipeline, presenter = build(config, instant_generator, vt)
    reveal_times = record_reveal_times(pipeline, vt)

    task = pipeline.start()
    await vt.run_until(3.0)
    assert not task.done()
    released = await pipeline.shutdown()

    assert 2 <= pipeline.stats.reveals <= 4
    gaps = [b - a for a, b in zip(reveal_times, reveal_times[1:])]
    assert gaps
    for gap in gaps:
        assert gap == pytest.approx(1.0, abs=0.25)

    # The wait in progress at shutdown is cancelled before it is counted
    assert vt.waits - 1 <= pipeline.stats.flip_steps <= vt.waits
    assert vt.waits == round(vt.now / config.flip_interval)
    assert pipeline.stats.rotations >= 10
    assert presenter.reveal_frames > 0
    assert released == config.total_buffer_count


async def test_slow_generator_cheap_fills_carry_display(make_config, slow_generator, vt):
    """Test a 2.5 s generation against a 0.1 s flip.

    Why: The display must keep flipping on cheap copies while generation runs
    Contract:
        - at least 20 cheap-fill rotations
        - stock drains and refills at least twice
        - no pool exhaustion; the loop is still running at the end
        - generate() never runs twice at once over the whole run
    """
    config = make_config(flip_interval=0.1, reveal_interval=1.0, pool_size=4)
    generator = slow_generator(2.5)
    pipeline, _ = build(config, generator, vt)

    task = pipeline.start()
    await vt.run_until(6.0)
    assert not task.done()
    await pipeline.shutdown()

    stats = pipeline.stats
    assert stats.rotations >= 20
    assert stats.cheap_fills >= 20
    assert stats.stock_drains >= 2
    assert stats.refills >= 2
    assert generator.completed >= 1
    assert stats.reveals >= 1
    assert generator.calls >= 2
    assert generator.peak_active == 1


async def test_overlap_tracking_sees_concurrent_calls(slow_generator, vt):
    """Test the generator overlap counter registers two concurrent calls.

    Why: The single-in-flight assertions above rely on this counter
    Contract: two overlapping generate() calls give peak_active == 2
    """
    generator = slow_generator(0.5)
    shape = (1, 2, 2)
    tasks = [
        asyncio.create_task(
            generator.generate(torch.zeros(shape), None, Buffer(i, torch.zeros(shape)), asyncio.Event())
        )
        for i in range(2)
    ]
    for _ in range(5):
        await asyncio.sleep(0)
    vt.now = 1.0
    await asyncio.gather(*tasks)

    assert generator.peak_active == 2
    assert generator.active == 0


async def test_shutdown_mid_generation(make_config, slow_generator, vt):
    """Test cancellation while a generation is in flight.

    Why: Shutdown must not wait for the generator or leak its buffer
    Contract:
        - loop task finished as soon as shutdown returns
        - generation resolved as cancelled
        - every buffer released exactly once
    """
    config = make_config(pool_size=4)
    generator = slow_generator(100.0)
    pipeline, _ = build(config, generator, vt)

    task = pipeline.start()
    await vt.run_until(1.0)
    buffers = list(pipeline.pool)
    assert pipeline.coordinator.in_flight
    steps_before = pipeline.stats.flip_steps

    released = await pipeline.shutdown()

    assert task.done()
    assert pipeline.stats.flip_steps <= steps_before + 1
    assert pipeline.coordinator.cancelled == 1
    assert pipeline.stats.generation_cancellations == 1
    assert released == config.total_buffer_count
    assert all(buffer.disposed for buffer in buffers)
    assert await pipeline.shutdown() == 0


async def test_shutdown_mid_fill(make_config, slow_generator, vt):
    """Test cancellation while a cheap-filled buffer is waiting to be banked.

    Contract: the half-filled buffer is recycled; ownership census passes
    """
    config = make_config(pool_size=4)
    pipeline, _ = build(config, slow_generator(100.0), vt)

    pipeline.start()
    for _ in range(1000):
        if len(pipeline.in_flight_buffers()) == 2:
            break
        await vt.run_until(vt.now + config.flip_interval / 2)
    assert len(pipeline.in_flight_buffers()) == 2

    released = await pipeline.shutdown()

    assert released == config.total_buffer_count
    assert pipeline.in_flight_buffers() == []


async def test_always_failing_generator(make_config, failing_generator, vt):
    """Test a generator that never succeeds.

    Why: Generation failure is recoverable; the display degrades to flips
    Contract:
        - loop keeps running indefinitely
        - reveal layer never drawn
        - every failure recycles its buffer
    """
    config = make_config(pool_size=4)
    pipeline, presenter = build(config, failing_generator, vt)

    task = pipeline.start()
    await vt.run_until(10.0)
    assert not task.done()

    assert pipeline.stats.reveals == 0
    assert presenter.reveal_frames == 0
    assert not pipeline.clock.reveal_visible
    assert failing_generator.calls >= 5
    assert pipeline.stats.generation_failures >= failing_generator.calls - 1
    assert pipeline.stats.rotations > 0

    assert await pipeline.shutdown() == config.total_buffer_count


async def test_drained_admission_policy(make_config, instant_generator, vt):
    """Test the drained policy admits a generation after every stock drain."""
    config = make_config(pool_size=4, admission_policy="drained")
    pipeline, _ = build(config, instant_generator, vt)

    pipeline.start()
    await vt.run_until(3.0)
    await pipeline.shutdown()

    assert pipeline.stats.reveals >= 3
    assert pipeline.coordinator.started >= pipeline.stats.stock_drains
    assert instant_generator.peak_active == 1


async def test_ownership_violation_aborts_loop(make_config, slow_generator, vt):
    """Test a corrupted free queue stops the loop at the next transition.

    Why: Double ownership is a scheduling bug, never recovered silently
    Contract: loop task ends with OwnershipError; buffers still released
    """
    config = make_config(pool_size=4)
    pipeline, _ = build(config, slow_generator(100.0), vt)

    task = pipeline.start()
    await vt.run_until(0.5)
    pipeline.pool.release(pipeline.state.revealed)
    for _ in range(1000):
        if task.done():
            break
        await asyncio.sleep(0)

    assert task.done()
    with pytest.raises(OwnershipError):
        await pipeline.shutdown()

    assert isinstance(task.exception(), OwnershipError)
    assert not pipeline.active
