"""Collaborator interfaces used by the frame pipeline, with tensor reference implementations.

The scheduler only depends on three abstract collaborators:

- ImageSource: ``current_image()`` returns the latest source frame
- Compositor: ``copy(src, dst)`` and ``draw(buffer, transform, blend)``
- Generator: ``await generate(source, params, destination, cancel_event)``

The reference implementations below work on plain torch tensors. They drive
the demo CLI and the test-suite; a GPU renderer or a diffusion backend plugs
in by implementing the same ABCs.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass

import torch

from shuffler.buffers import Buffer
from shuffler.config import GenerationParams

logger = logging.getLogger(__name__)


# ============================================================================
# Interfaces
# ============================================================================


class ImageSource(ABC):
    """Produces the current source image on demand."""

    @abstractmethod
    def current_image(self) -> torch.Tensor:
        """Return a (channels, height, width) tensor. Callers copy, never keep it."""
        ...


@dataclass(frozen=True)
class Transform:
    """Placement of a drawn page.

    Attributes:
        z: Depth; larger is further back
        scale: Uniform scale
        offset_y: Vertical offset as a fraction of image height
    """

    z: float = 0.0
    scale: float = 1.0
    offset_y: float = 0.0


@dataclass(frozen=True)
class BlendParams:
    """How a page is blended onto the frame.

    Attributes:
        progress: Crossfade weight from the primary buffer towards ``secondary``
        opacity: Weight of the page over what is already on the frame
        secondary: Second buffer of a flip pair (None draws the primary alone)
    """

    progress: float = 0.0
    opacity: float = 1.0
    secondary: Buffer | None = None


class Compositor(ABC):
    """Copy and draw primitives. Both are synchronous and must not block a tick."""

    @abstractmethod
    def copy(self, src: torch.Tensor, dst: Buffer) -> None:
        ...

    @abstractmethod
    def begin_frame(self) -> None:
        """Start a new presented frame."""
        ...

    @abstractmethod
    def draw(self, buffer: Buffer, transform: Transform, blend: BlendParams) -> None:
        ...


class Generator(ABC):
    """Slow, variable-latency image generation.

    Implementations write exactly one output image into ``destination`` and
    return. Raising signals failure. Cancellation arrives either as
    ``asyncio.CancelledError`` at an await point or through ``cancel_event``
    for backends that poll; either way the implementation must stop promptly.
    """

    @abstractmethod
    async def generate(
        self,
        source_image: torch.Tensor,
        params: GenerationParams,
        destination: Buffer,
        cancel_event: asyncio.Event,
    ) -> None:
        ...


# ============================================================================
# Reference implementations
# ============================================================================


class TensorSource(ImageSource):
    """Serves a fixed tensor. Useful for tests and still-image input."""

    def __init__(self, image: torch.Tensor):
        self.image = image

    def current_image(self) -> torch.Tensor:
        return self.image


class PatternSource(ImageSource):
    """Deterministic animated test pattern.

    A per-channel sine gradient drifts one step per call, with seeded noise on
    top. All storage is allocated in the constructor; ``current_image()``
    rewrites it in place and returns the same tensor every time.
    """

    def __init__(
        self,
        shape: tuple[int, int, int],
        seed: int = 123,
        speed: float = 0.02,
        noise_level: float = 0.05,
        device: str = "cpu",
    ):
        channels, height, width = shape
        self.speed = speed
        self.noise_level = noise_level
        self.frame_index = 0

        self._generator = torch.Generator(device=device)
        self._generator.manual_seed(seed)

        xs = torch.linspace(0.0, 2.0 * math.pi, width, device=device)
        ys = torch.linspace(0.0, math.pi, height, device=device)
        offsets = torch.arange(channels, device=device, dtype=torch.float32) * (2.0 * math.pi / 3.0)
        self._grid = xs.view(1, 1, width) + ys.view(1, height, 1) + offsets.view(channels, 1, 1)
        self._frame = torch.empty(shape, device=device)
        self._noise = torch.empty(shape, device=device)

    def current_image(self) -> torch.Tensor:
        phase = self.frame_index * self.speed * 2.0 * math.pi
        self.frame_index += 1

        torch.add(self._grid, phase, out=self._frame)
        self._frame.sin_().mul_(0.5).add_(0.5)
        if self.noise_level > 0:
            self._noise.uniform_(-1.0, 1.0, generator=self._generator)
            self._frame.add_(self._noise, alpha=self.noise_level).clamp_(0.0, 1.0)
        return self._frame


class TensorCompositor(Compositor):
    """Composites pages into a pre-allocated canvas tensor.

    Depth and scale are ignored; the vertical offset shifts the page down by
    ``offset_y * height`` rows, pages shifted past the bottom edge are skipped.
    """

    def __init__(
        self,
        shape: tuple[int, int, int],
        device: str = "cpu",
        dtype: torch.dtype = torch.float32,
    ):
        self.canvas = torch.zeros(shape, device=device, dtype=dtype)
        self._scratch = torch.zeros(shape, device=device, dtype=dtype)
        self.copies = 0
        self.draws = 0

    def copy(self, src: torch.Tensor, dst: Buffer) -> None:
        dst.tensor.copy_(src)
        self.copies += 1

    def begin_frame(self) -> None:
        self.canvas.zero_()

    def draw(self, buffer: Buffer, transform: Transform, blend: BlendParams) -> None:
        if blend.opacity <= 0:
            return

        if blend.secondary is not None:
            torch.lerp(buffer.tensor, blend.secondary.tensor, blend.progress, out=self._scratch)
        else:
            self._scratch.copy_(buffer.tensor)

        height = self.canvas.shape[1]
        shift = max(0, int(round(transform.offset_y * height)))
        if shift >= height:
            return
        self.canvas[:, shift:].lerp_(self._scratch[:, : height - shift], blend.opacity)
        self.draws += 1


class CopyGenerator(Generator):
    """Stand-in generator: waits a random latency, then writes a stylised copy.

    The output is the source posterised to ``step_count`` levels and blended
    back with the source by ``strength``. Latency is drawn from an explicitly
    seeded Random so runs are reproducible.
    """

    def __init__(
        self,
        min_latency: float = 0.5,
        max_latency: float = 2.0,
        rng: random.Random | None = None,
    ):
        if min_latency < 0 or max_latency < min_latency:
            raise ValueError(
                f"Invalid latency range [{min_latency}, {max_latency}]"
            )
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.rng = rng or random.Random(0)

    async def generate(
        self,
        source_image: torch.Tensor,
        params: GenerationParams,
        destination: Buffer,
        cancel_event: asyncio.Event,
    ) -> None:
        latency = self.rng.uniform(self.min_latency, self.max_latency)
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=latency)
        except asyncio.TimeoutError:
            pass
        else:
            raise asyncio.CancelledError("generation cancelled")

        levels = max(1, params.step_count)
        out = destination.tensor
        out.copy_(source_image).mul_(levels).floor_().div_(levels)
        out.lerp_(source_image.to(out.dtype), 1.0 - params.strength)

        logger.debug(
            "Generated image",
            extra={"latency_s": latency, "seed": params.seed, "buffer": destination.index},
        )
