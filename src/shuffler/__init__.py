"""
Shuffler - flip-display frame pipeline with a slow background generator.

Components:
- buffers: Fixed-size buffer pool (no allocation after startup)
- frame_state: Display slots and the stock queue
- clock: Flip and reveal animation progress
- generation: Single in-flight generation coordinator
- pipeline: The control loop tying it together
- presenter: Per-tick drawing of the current state
"""

from shuffler.buffers import Buffer, BufferPool
from shuffler.clock import AnimationClock
from shuffler.config import GenerationParams, ShufflerConfig, load_config
from shuffler.frame_state import FrameState
from shuffler.generation import (
    GenerationCoordinator,
    GenerationOutcome,
    GenerationResult,
    SeedContext,
)
from shuffler.pipeline import PipelineStats, ShufflerPipeline
from shuffler.presenter import Presenter

__version__ = "0.1.0"

__all__ = [
    "AnimationClock",
    "Buffer",
    "BufferPool",
    "FrameState",
    "GenerationCoordinator",
    "GenerationOutcome",
    "GenerationParams",
    "GenerationResult",
    "PipelineStats",
    "Presenter",
    "SeedContext",
    "ShufflerConfig",
    "ShufflerPipeline",
    "load_config",
]
