"""Configuration for the Shuffler frame pipeline.

Configuration is supplied once at startup and is immutable thereafter. It is
normally loaded from ``config.yaml`` at the repository root:

    timing:
      flip_interval: 0.175
      reveal_interval: 1.575
      insertion_count: 5
    buffers:
      pool_size: 9
    generation:
      prompt: "Surrealistic painting by J. C. Leyendecker"
      strength: 0.7

Any section or key may be omitted; missing values fall back to the defaults
declared on the dataclasses below.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping

import torch
import yaml

from shuffler.errors import ConfigError

logger = logging.getLogger(__name__)

AdmissionPolicy = Literal["threshold", "drained"]
SeedPolicy = Literal["random", "fixed"]

ADMISSION_POLICIES: tuple[str, ...] = ("threshold", "drained")
SEED_POLICIES: tuple[str, ...] = ("random", "fixed")

# current, next, revealed
SLOT_COUNT = 3

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config.yaml"

# Floating point only; the compositor and generator blend in the unit range
_DTYPES: dict[str, torch.dtype] = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}

DTYPE_NAMES: tuple[str, ...] = tuple(_DTYPES)


@dataclass(frozen=True)
class GenerationParams:
    """Parameter set handed to the generation collaborator.

    Opaque to the scheduler; it is only carried from config to request.
    """

    prompt: str = "Surrealistic painting by J. C. Leyendecker"
    strength: float = 0.7
    step_count: int = 7
    guidance: float = 10.0
    seed: int = 1


@dataclass(frozen=True)
class SeedConfig:
    """Seed policy for generation requests.

    Attributes:
        policy: "random" draws a fresh seed per request from a Random seeded
            with ``base_seed``; "fixed" reuses ``GenerationParams.seed``.
        base_seed: Seed for the request-seed generator
    """

    policy: SeedPolicy = "random"
    base_seed: int = 8943


@dataclass(frozen=True)
class ShufflerConfig:
    """Immutable scheduler configuration.

    Attributes:
        flip_interval: Seconds between fast display rotations
        reveal_interval: Seconds a generation result stays in its reveal window
        insertion_count: Flip cycles to wait before a result starts revealing
        pool_size: Queue buffers (free + stock + generation target). Slot
            buffers are allocated on top of this. None derives it from the
            reveal/flip ratio.
        admission_policy: When to start the next generation
        admission_threshold: Flip cycles between generation starts for the
            "threshold" policy. None means ``insertion_count``.
        lift_scale: Multiplier for the cubic reveal lift
        image_width: Buffer width in pixels
        image_height: Buffer height in pixels
        channels: Buffer channel count
        device: Torch device the buffers live on
        dtype: Buffer dtype name
        display_fps: Presentation tick rate for the built-in driver
        check_invariants: Run the ownership census after every transition
        generation: Default generation parameters
        seed: Seed policy for generation requests
    """

    flip_interval: float = 0.175
    reveal_interval: float = 1.575
    insertion_count: int = 5
    pool_size: int | None = 9
    admission_policy: AdmissionPolicy = "threshold"
    admission_threshold: int | None = None
    lift_scale: float = 0.5
    image_width: int = 640
    image_height: int = 384
    channels: int = 3
    device: str = "cpu"
    dtype: str = "float32"
    display_fps: int = 24
    check_invariants: bool = True
    generation: GenerationParams = field(default_factory=GenerationParams)
    seed: SeedConfig = field(default_factory=SeedConfig)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.flip_interval <= 0:
            errors.append(f"flip_interval must be > 0, got {self.flip_interval}")
        if self.reveal_interval <= 0:
            errors.append(f"reveal_interval must be > 0, got {self.reveal_interval}")
        if self.insertion_count < 0:
            errors.append(f"insertion_count must be >= 0, got {self.insertion_count}")
        # One buffer is always held back as a generation target
        if self.pool_size is not None and self.pool_size < 2:
            errors.append(f"pool_size must be >= 2, got {self.pool_size}")
        if self.admission_policy not in ADMISSION_POLICIES:
            errors.append(
                f"admission_policy must be one of {ADMISSION_POLICIES}, "
                f"got {self.admission_policy!r}"
            )
        if self.admission_threshold is not None and self.admission_threshold < 0:
            errors.append(f"admission_threshold must be >= 0, got {self.admission_threshold}")
        if self.image_width <= 0 or self.image_height <= 0 or self.channels <= 0:
            errors.append(
                f"image geometry must be positive, got "
                f"{self.channels}x{self.image_height}x{self.image_width}"
            )
        if self.dtype not in _DTYPES:
            errors.append(f"dtype must be one of {sorted(_DTYPES)}, got {self.dtype!r}")
        if self.display_fps <= 0:
            errors.append(f"display_fps must be > 0, got {self.display_fps}")
        if self.seed.policy not in SEED_POLICIES:
            errors.append(f"seed.policy must be one of {SEED_POLICIES}, got {self.seed.policy!r}")

        # With a zero threshold every cycle re-admits into the only spare buffer
        # and refill never runs
        if (
            not errors
            and self.admission_policy == "threshold"
            and self.effective_admission_threshold == 0
            and self.queue_buffer_count < 3
        ):
            errors.append(
                f"pool_size must be >= 3 when the admission threshold is 0, "
                f"got {self.queue_buffer_count}"
            )

        if errors:
            raise ConfigError("; ".join(errors))

    @property
    def queue_buffer_count(self) -> int:
        """Number of free-queue buffers allocated at startup."""
        if self.pool_size is not None:
            return self.pool_size
        return math.ceil(self.reveal_interval / self.flip_interval) + 1

    @property
    def total_buffer_count(self) -> int:
        """Every buffer the pool owns: slots plus queue buffers."""
        return SLOT_COUNT + self.queue_buffer_count

    @property
    def effective_admission_threshold(self) -> int:
        if self.admission_threshold is not None:
            return self.admission_threshold
        return self.insertion_count

    @property
    def buffer_shape(self) -> tuple[int, int, int]:
        return (self.channels, self.image_height, self.image_width)

    @property
    def torch_dtype(self) -> torch.dtype:
        return _DTYPES[self.dtype]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ShufflerConfig:
        """Create ShufflerConfig from a nested dict (as loaded from YAML).

        Args:
            data: Mapping with optional ``timing``, ``buffers``, ``admission``,
                ``display``, ``image``, ``generation`` and ``seed`` sections

        Returns:
            Validated ShufflerConfig instance

        Raises:
            ConfigError: If a section is not a mapping or a value is invalid
        """
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError("Config root must be a mapping")

        timing = _section(data, "timing")
        buffers = _section(data, "buffers")
        admission = _section(data, "admission")
        display = _section(data, "display")
        image = _section(data, "image")
        generation = _section(data, "generation")
        seed = _section(data, "seed")

        defaults = cls()
        gen_defaults = GenerationParams()
        seed_defaults = SeedConfig()

        try:
            pool_size = buffers.get("pool_size", defaults.pool_size)
            threshold = admission.get("threshold", defaults.admission_threshold)
            return cls(
                flip_interval=float(timing.get("flip_interval", defaults.flip_interval)),
                reveal_interval=float(timing.get("reveal_interval", defaults.reveal_interval)),
                insertion_count=int(timing.get("insertion_count", defaults.insertion_count)),
                pool_size=None if pool_size is None else int(pool_size),
                admission_policy=str(admission.get("policy", defaults.admission_policy)),
                admission_threshold=None if threshold is None else int(threshold),
                lift_scale=float(display.get("lift_scale", defaults.lift_scale)),
                image_width=int(image.get("width", defaults.image_width)),
                image_height=int(image.get("height", defaults.image_height)),
                channels=int(image.get("channels", defaults.channels)),
                device=str(buffers.get("device", defaults.device)),
                dtype=str(buffers.get("dtype", defaults.dtype)),
                display_fps=int(display.get("fps", defaults.display_fps)),
                check_invariants=bool(buffers.get("check_invariants", defaults.check_invariants)),
                generation=GenerationParams(
                    prompt=str(generation.get("prompt", gen_defaults.prompt)),
                    strength=float(generation.get("strength", gen_defaults.strength)),
                    step_count=int(generation.get("step_count", gen_defaults.step_count)),
                    guidance=float(generation.get("guidance", gen_defaults.guidance)),
                    seed=int(generation.get("seed", gen_defaults.seed)),
                ),
                seed=SeedConfig(
                    policy=str(seed.get("policy", seed_defaults.policy)),
                    base_seed=int(seed.get("base_seed", seed_defaults.base_seed)),
                ),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid config value: {e}") from e


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{key}' must be a mapping")
    return value


def load_config(config_path: str | Path | None = None) -> ShufflerConfig:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to config.yaml (default: repository-root config.yaml).
            When no path is given and the default file does not exist, the
            built-in defaults are returned.

    Returns:
        Validated ShufflerConfig

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
        ConfigError: If the file content is invalid
    """
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            logger.info("No config.yaml found, using built-in defaults")
            return ShufflerConfig()
        config_path = DEFAULT_CONFIG_PATH

    with open(config_path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed YAML in {config_path}: {e}") from e

    config = ShufflerConfig.from_dict(data)
    logger.info(
        "Configuration loaded",
        extra={
            "path": str(config_path),
            "flip_interval": config.flip_interval,
            "reveal_interval": config.reveal_interval,
            "insertion_count": config.insertion_count,
            "queue_buffers": config.queue_buffer_count,
        },
    )
    return config
