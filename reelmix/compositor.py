"""Compositor — draws the capture sources into one frame per tick.

Each tick clears the surface to black, draws the active layout and
passes the surface pixels to the frame sink (the stream encoder).
Sources are sampled, never awaited: whatever frame a source holds at
tick time is drawn, so a slow source repeats frames and a fast one
skips them.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .layouts import Layout, OVERLAY_CIRCLE, STACKED_VERTICAL
from .models import OverlayPosition
from .surface import CompositingSurface

logger = logging.getLogger(__name__)

# Placeholder label height as a fraction of the canvas width
PLACEHOLDER_TEXT_SCALE = 0.05


@dataclass
class CompositorState:
    """What the render loop draws.  Only the overlay position may change
    while a recording is running."""

    target_width: int
    target_height: int
    target_fps: int
    layout: Layout
    overlay_position: OverlayPosition = OverlayPosition()

    @property
    def tick_interval_ms(self) -> float:
        return 1000.0 / self.target_fps

    def set_overlay_position(self, x: float, y: float) -> OverlayPosition:
        """Clamp to [0, 100] per axis and store; returns the stored value."""
        self.overlay_position = OverlayPosition.clamped(x, y)
        return self.overlay_position


def _frame_of(source) -> Optional[np.ndarray]:
    """The source's current frame if it is ready, else None."""
    if source is None or not source.is_ready():
        return None
    return source.current_frame()


class Compositor:
    """Fixed-cadence render loop over a :class:`CompositingSurface`."""

    def __init__(self, state: CompositorState, screen, camera=None,
                 surface: Optional[CompositingSurface] = None) -> None:
        self.state = state
        self._screen = screen
        self._camera = camera
        self._surface = surface or CompositingSurface(state.target_width, state.target_height)
        self._sink: Optional[Callable[[np.ndarray], None]] = None
        self._scheduler = None
        self._handle = None
        self._frame_count = 0
        self._draw_errors = 0

    @property
    def surface(self) -> CompositingSurface:
        return self._surface

    @property
    def frame_count(self) -> int:
        """Frames rendered so far."""
        return self._frame_count

    @property
    def draw_errors(self) -> int:
        return self._draw_errors

    @property
    def running(self) -> bool:
        return self._handle is not None

    # ── loop control ────────────────────────────────────────────────

    def start(self, scheduler, sink: Callable[[np.ndarray], None]) -> None:
        """Begin ticking every ``1000 / fps`` ms, feeding *sink* each frame."""
        if self._handle is not None:
            return
        self._scheduler = scheduler
        self._sink = sink
        self._handle = scheduler.tick(self._on_tick, self.state.tick_interval_ms)

    def stop(self) -> None:
        if self._handle is not None:
            self._scheduler.cancel(self._handle)
            self._handle = None

    def _on_tick(self) -> None:
        frame = self.render_frame()
        if self._sink is not None:
            self._sink(frame)

    # ── drawing ─────────────────────────────────────────────────────

    def render_frame(self) -> np.ndarray:
        """Draw one composited frame and return the surface pixels."""
        surface = self._surface
        surface.clear()
        try:
            kind = self.state.layout.kind
            if kind == OVERLAY_CIRCLE:
                self._draw_overlay_circle()
            elif kind == STACKED_VERTICAL:
                self._draw_stacked_vertical()
            else:
                raise ValueError(f"Unknown layout kind: {kind!r}")
        except Exception as exc:
            self._draw_errors += 1
            logger.warning("Frame %d draw failed: %s", self._frame_count, exc)
        self._frame_count += 1
        return surface.pixels

    def _draw_overlay_circle(self) -> None:
        surface = self._surface
        layout = self.state.layout
        W, H = surface.width, surface.height

        screen = _frame_of(self._screen)
        if screen is not None:
            surface.draw_cover(screen, 0, 0, W, H)

        camera = _frame_of(self._camera)
        if camera is not None:
            pos = self.state.overlay_position
            cx = pos.x / 100.0 * W
            cy = pos.y / 100.0 * H
            d = layout.overlay_size
            surface.draw_cover_circle(camera, cx, cy, d)
            surface.stroke_circle(cx, cy, d / 2.0, layout.border_color, layout.border_width)

    def _draw_stacked_vertical(self) -> None:
        surface = self._surface
        layout = self.state.layout
        W, H = surface.width, surface.height
        half_h = H / 2.0

        screen = _frame_of(self._screen)
        if screen is not None:
            surface.draw_cover(screen, 0, 0, W, half_h)

        if self._camera is not None:
            camera = _frame_of(self._camera)
            if camera is not None:
                surface.draw_cover(camera, 0, half_h, W, H - half_h)
        else:
            surface.fill_rect(0, half_h, W, H - half_h, layout.placeholder_fill)
            surface.draw_text_centered(
                layout.placeholder_text, W / 2.0, half_h + half_h / 2.0,
                layout.placeholder_color, W * PLACEHOLDER_TEXT_SCALE,
            )

        surface.draw_hline(half_h, layout.divider_color, layout.divider_width)
