"""Layout presets for the compositor.

Two layouts exist:

* ``OVERLAY_CIRCLE`` — the screen fills the canvas and the camera sits
  on top of it inside a bordered circle that can be dragged live.
* ``STACKED_VERTICAL`` — a portrait (9:16) canvas split into two equal
  bands, screen on top and camera below, with a divider line.

Each preset carries the draw parameters the compositor needs.
Colors are RGB tuples.
"""

from dataclasses import dataclass
from typing import Dict, Tuple, Union

from .models import QualityConfig

OVERLAY_CIRCLE = "OVERLAY_CIRCLE"
STACKED_VERTICAL = "STACKED_VERTICAL"
LAYOUT_KINDS = (OVERLAY_CIRCLE, STACKED_VERTICAL)


@dataclass(frozen=True)
class OverlayCircleLayout:
    """Screen full-frame with a circular camera overlay."""
    overlay_size: int = 240                       # circle diameter, px
    border_width: int = 4
    border_color: Tuple[int, int, int] = (255, 255, 255)

    kind = OVERLAY_CIRCLE

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "overlay_size": self.overlay_size,
            "border_width": self.border_width,
            "border_color": list(self.border_color),
        }


@dataclass(frozen=True)
class StackedVerticalLayout:
    """Screen in the top band, camera (or placeholder) in the bottom band."""
    divider_width: int = 6
    divider_color: Tuple[int, int, int] = (255, 255, 255)
    placeholder_fill: Tuple[int, int, int] = (17, 17, 17)    # #111
    placeholder_color: Tuple[int, int, int] = (51, 51, 51)   # #333
    placeholder_text: str = "Camera Disabled"

    kind = STACKED_VERTICAL

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "divider_width": self.divider_width,
            "divider_color": list(self.divider_color),
            "placeholder_fill": list(self.placeholder_fill),
            "placeholder_color": list(self.placeholder_color),
            "placeholder_text": self.placeholder_text,
        }


Layout = Union[OverlayCircleLayout, StackedVerticalLayout]


def layout_from_dict(d: dict) -> Layout:
    """Rebuild a layout preset from ``to_dict()`` output."""
    kind = d.get("kind")
    if kind == OVERLAY_CIRCLE:
        return OverlayCircleLayout(
            overlay_size=int(d.get("overlay_size", 240)),
            border_width=int(d.get("border_width", 4)),
            border_color=tuple(d.get("border_color", (255, 255, 255))),
        )
    if kind == STACKED_VERTICAL:
        defaults = StackedVerticalLayout()
        return StackedVerticalLayout(
            divider_width=int(d.get("divider_width", defaults.divider_width)),
            divider_color=tuple(d.get("divider_color", defaults.divider_color)),
            placeholder_fill=tuple(d.get("placeholder_fill", defaults.placeholder_fill)),
            placeholder_color=tuple(d.get("placeholder_color", defaults.placeholder_color)),
            placeholder_text=d.get("placeholder_text", defaults.placeholder_text),
        )
    raise ValueError(f"Unknown layout kind: {kind!r}")


# ── Built-in presets ────────────────────────────────────────────────

LAYOUT_PRESETS: Dict[str, Layout] = {
    OVERLAY_CIRCLE: OverlayCircleLayout(),
    STACKED_VERTICAL: StackedVerticalLayout(),
}

DEFAULT_LAYOUT = LAYOUT_PRESETS[OVERLAY_CIRCLE]


def get_layout(kind: str) -> Layout:
    """Return the built-in preset for *kind*."""
    try:
        return LAYOUT_PRESETS[kind]
    except KeyError:
        raise ValueError(f"Unknown layout kind: {kind!r}") from None


def canvas_size(quality: QualityConfig, layout: Layout) -> Tuple[int, int]:
    """Compositing surface size for *layout* at *quality*.

    The stacked layout is portrait, so the landscape resolution is
    transposed (1920×1080 → 1080×1920).
    """
    w, h = quality.landscape_size
    if layout.kind == STACKED_VERTICAL:
        return h, w
    return w, h
