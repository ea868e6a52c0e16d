"""Presentation tick: advance the animation clock and draw the slots.

``Presenter.tick(dt)`` is called at the host refresh rate. It never awaits
and never mutates queues or slots; it only reads the pipeline's FrameState.

Layers, back to front:
- background: ``current`` crossfading to ``next`` by ``flip_ease``
- reveal: ``revealed``, offset by ``reveal_lift``, drawn only while
  ``reveal_visible``
"""

from __future__ import annotations

import asyncio
import logging

from shuffler.collaborators import BlendParams, Compositor, Transform
from shuffler.pipeline import ShufflerPipeline

logger = logging.getLogger(__name__)

BACKGROUND_TRANSFORM = Transform(z=0.01, scale=3.0)


class Presenter:
    """Draws the pipeline state once per tick.

    Attributes:
        ticks: Ticks that drew a frame
        reveal_frames: Ticks that drew the reveal layer with non-zero opacity
    """

    def __init__(self, pipeline: ShufflerPipeline, compositor: Compositor):
        self.pipeline = pipeline
        self.compositor = compositor
        self.ticks = 0
        self.reveal_frames = 0

    def tick(self, dt: float) -> bool:
        """Advance the clock by ``dt`` seconds and draw one frame.

        Returns:
            True if a frame was drawn (False before initialize or after shutdown)
        """
        clock = self.pipeline.clock
        clock.advance(dt)
        if not self.pipeline.active:
            return False

        state = self.pipeline.state
        self.compositor.begin_frame()
        self.compositor.draw(
            state.current,
            BACKGROUND_TRANSFORM,
            BlendParams(progress=clock.flip_ease, secondary=state.next),
        )

        if clock.reveal_visible:
            self.compositor.draw(
                state.revealed,
                Transform(offset_y=clock.reveal_lift),
                BlendParams(opacity=clock.reveal_opacity),
            )
            if clock.reveal_opacity > 0:
                self.reveal_frames += 1

        self.ticks += 1
        return True

    async def run(self, fps: float | None = None) -> None:
        """Drive ``tick()`` at ``fps`` until cancelled.

        Args:
            fps: Tick rate (default: config.display_fps)
        """
        fps = fps or self.pipeline.config.display_fps
        interval = 1.0 / fps
        loop = asyncio.get_running_loop()
        last = loop.time()

        logger.info("Presenter started", extra={"fps": fps})
        try:
            while True:
                await asyncio.sleep(interval)
                now = loop.time()
                self.tick(now - last)
                last = now
        except asyncio.CancelledError:
            logger.info(
                "Presenter stopped",
                extra={"ticks": self.ticks, "reveal_frames": self.reveal_frames},
            )
            raise
