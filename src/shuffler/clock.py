"""Two-tier animation clock.

The presentation tick calls ``advance(dt)`` at the host refresh rate; the
pipeline loop calls ``reset_flip()`` on every rotation and ``reset_reveal()``
when a generation result is integrated.

Flip:
    flip_progress = min(1, flip_progress + dt / flip_interval)
    flip_ease     = clamp01(flip_progress)

Reveal:
    reveal_cutoff = (reveal_progress - flip_interval * insertion_count) / reveal_interval
    reveal_lift   = max(reveal_progress - flip_interval, 0) ** 3 * lift_scale

The reveal layer is drawn while ``reveal_lift >= 0`` and ``reveal_cutoff <= 1``.
Before the first integration reveal_progress is +inf, so the layer stays hidden.
"""

from __future__ import annotations

import math


def clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


class AnimationClock:
    """Flip and reveal progress shared by the pipeline loop and the presenter.

    Attributes:
        flip_progress: Fraction of the current flip transition, in [0, 1]
        reveal_progress: Seconds since the last integrated generation result
    """

    def __init__(
        self,
        flip_interval: float,
        reveal_interval: float,
        insertion_count: int,
        lift_scale: float = 0.5,
    ):
        if flip_interval <= 0 or reveal_interval <= 0:
            raise ValueError("flip_interval and reveal_interval must be > 0")
        self.flip_interval = flip_interval
        self.reveal_interval = reveal_interval
        self.insertion_count = insertion_count
        self.lift_scale = lift_scale

        self.flip_progress = 0.0
        self.reveal_progress = math.inf

    @classmethod
    def from_config(cls, config) -> AnimationClock:
        return cls(
            flip_interval=config.flip_interval,
            reveal_interval=config.reveal_interval,
            insertion_count=config.insertion_count,
            lift_scale=config.lift_scale,
        )

    def advance(self, dt: float) -> None:
        """Step both transitions by ``dt`` seconds of presentation time."""
        if dt < 0:
            raise ValueError(f"dt must be >= 0, got {dt}")
        self.flip_progress = min(1.0, self.flip_progress + dt / self.flip_interval)
        self.reveal_progress += dt

    def reset_flip(self) -> None:
        self.flip_progress = 0.0

    def reset_reveal(self) -> None:
        """Restart both transitions for a freshly integrated result."""
        self.flip_progress = 0.0
        self.reveal_progress = 0.0

    @property
    def revealing(self) -> bool:
        """True once any generation result has been integrated."""
        return math.isfinite(self.reveal_progress)

    @property
    def flip_ease(self) -> float:
        return clamp01(self.flip_progress)

    @property
    def insertion_delay(self) -> float:
        return self.flip_interval * self.insertion_count

    @property
    def reveal_cutoff(self) -> float:
        return (self.reveal_progress - self.insertion_delay) / self.reveal_interval

    @property
    def reveal_lift(self) -> float:
        # Cubic ease-in
        t = max(self.reveal_progress - self.flip_interval, 0.0)
        return t**3 * self.lift_scale

    @property
    def reveal_visible(self) -> bool:
        return self.reveal_lift >= 0 and self.reveal_cutoff <= 1

    @property
    def reveal_opacity(self) -> float:
        """Fades the reveal layer in over one flip once the insertion delay has passed."""
        if not self.revealing:
            return 0.0
        return clamp01((self.reveal_progress - self.insertion_delay) / self.flip_interval)
