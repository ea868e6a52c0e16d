"""Shuffler demo runner.

Runs the frame pipeline against the built-in test pattern source and the
stand-in copy generator, ticks the presenter at the display rate, and logs
pipeline statistics on exit.

Example:
    $ python -m shuffler --duration 10

    # Slow generator (2-4 s) against a fast flip
    $ python -m shuffler --min-latency 2 --max-latency 4 --log-level DEBUG

    # Custom config
    $ python -m shuffler --config my_config.yaml --seed 42
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os

from shuffler.collaborators import CopyGenerator, PatternSource, TensorCompositor
from shuffler.config import ShufflerConfig, load_config
from shuffler.generation import SeedContext
from shuffler.pipeline import PipelineStats, ShufflerPipeline
from shuffler.presenter import Presenter

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Shuffler flip-display pipeline demo")
    parser.add_argument(
        "--config",
        default=os.getenv("SHUFFLER_CONFIG"),
        help="Path to config.yaml (default: repository config.yaml or built-in defaults)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=10.0,
        help="Seconds to run before shutting down (default: 10)",
    )
    parser.add_argument(
        "--fps",
        type=float,
        default=None,
        help="Presentation tick rate (default: display.fps from config)",
    )
    parser.add_argument(
        "--min-latency",
        type=float,
        default=0.5,
        help="Minimum stand-in generation latency in seconds (default: 0.5)",
    )
    parser.add_argument(
        "--max-latency",
        type=float,
        default=2.0,
        help="Maximum stand-in generation latency in seconds (default: 2.0)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override seed.base_seed from config",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("SHUFFLER_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


async def run_demo(
    config: ShufflerConfig,
    duration: float,
    fps: float | None = None,
    min_latency: float = 0.5,
    max_latency: float = 2.0,
) -> PipelineStats:
    """Run pipeline and presenter for ``duration`` seconds, then shut down.

    Returns:
        Final pipeline statistics
    """
    seeds = SeedContext.from_config(config.seed)
    source = PatternSource(config.buffer_shape, seed=config.seed.base_seed, device=config.device)
    compositor = TensorCompositor(config.buffer_shape, device=config.device, dtype=config.torch_dtype)
    generator = CopyGenerator(min_latency=min_latency, max_latency=max_latency, rng=seeds.spawn())

    pipeline = ShufflerPipeline(config, generator, source, compositor, seeds=seeds)
    presenter = Presenter(pipeline, compositor)

    async with pipeline:
        presenter_task = asyncio.create_task(presenter.run(fps), name="shuffler-presenter")
        try:
            await asyncio.sleep(duration)
        finally:
            presenter_task.cancel()
            try:
                await presenter_task
            except asyncio.CancelledError:
                pass

    return pipeline.stats


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level), format="%(asctime)s %(levelname)s %(message)s"
    )

    config = load_config(args.config)
    if args.seed is not None:
        config = dataclasses.replace(
            config, seed=dataclasses.replace(config.seed, base_seed=args.seed)
        )

    logger.info(
        f"Shuffler starting: flip={config.flip_interval}s reveal={config.reveal_interval}s "
        f"insertion={config.insertion_count} buffers={config.total_buffer_count}"
    )
    logger.info(f"Generation latency: {args.min_latency}-{args.max_latency}s")

    stats = asyncio.run(
        run_demo(
            config,
            duration=args.duration,
            fps=args.fps,
            min_latency=args.min_latency,
            max_latency=args.max_latency,
        )
    )

    logger.info(
        f"Shuffler finished: {stats.rotations} rotations, {stats.cheap_fills} cheap fills, "
        f"{stats.reveals} reveals, {stats.generation_failures} failed generations"
    )


if __name__ == "__main__":
    main()
