"""Compositing surface — the pixel buffer every visual source is drawn onto.

The surface owns a BGR ``uint8`` numpy canvas (the layout ffmpeg's
``bgr24`` raw input expects).  All drawing happens through methods on
the surface; nothing else writes into the canvas.
"""

from typing import Optional, Tuple

import cv2
import numpy as np

Color = Tuple[int, int, int]  # RGB

BLACK: Color = (0, 0, 0)

# Height in px of FONT_HERSHEY_SIMPLEX capitals at fontScale=1
_HERSHEY_CAP_PX = 22.0


def _bgr(color: Color) -> Tuple[int, int, int]:
    r, g, b = color
    return int(b), int(g), int(r)


def cover_crop(src_w: float, src_h: float,
               dst_w: float, dst_h: float) -> Tuple[float, float, float, float]:
    """Source rectangle ``(x, y, w, h)`` for an aspect-fill ("cover") draw.

    The returned rectangle has the destination's aspect ratio and is
    centred in the source: the longer source dimension is cropped, the
    shorter one is kept whole.  Stretching it onto the destination box
    fills the box completely.
    """
    source_aspect = src_w / src_h
    dest_aspect = dst_w / dst_h
    if source_aspect > dest_aspect:
        # Source is wider: keep full height, crop width
        crop_w = src_h * dest_aspect
        return (src_w - crop_w) / 2, 0.0, crop_w, float(src_h)
    # Source is taller (or equal): keep full width, crop height
    crop_h = src_w / dest_aspect
    return 0.0, (src_h - crop_h) / 2, float(src_w), crop_h


def cover_crop_pixels(src_w: int, src_h: int,
                      dst_w: int, dst_h: int) -> Tuple[int, int, int, int]:
    """Integer ``(x1, y1, x2, y2)`` slice bounds of :func:`cover_crop`.

    Always inside the source and at least one pixel in each direction.
    """
    sx, sy, sw, sh = cover_crop(src_w, src_h, dst_w, dst_h)
    x1 = min(max(int(round(sx)), 0), src_w - 1)
    y1 = min(max(int(round(sy)), 0), src_h - 1)
    x2 = min(max(int(round(sx + sw)), x1 + 1), src_w)
    y2 = min(max(int(round(sy + sh)), y1 + 1), src_h)
    return x1, y1, x2, y2


def _to_bgr(frame: np.ndarray) -> np.ndarray:
    """Normalise grayscale / BGRA frames to 3-channel BGR."""
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    if frame.shape[2] == 4:
        return np.ascontiguousarray(frame[:, :, :3])
    return frame


class CompositingSurface:
    """A ``width``×``height`` BGR canvas with the compositor's draw ops."""

    def __init__(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid surface size {width}x{height}")
        self.width = int(width)
        self.height = int(height)
        self._pixels = np.zeros((self.height, self.width, 3), dtype=np.uint8)

    @property
    def pixels(self) -> np.ndarray:
        """The live canvas (not a copy)."""
        return self._pixels

    def snapshot(self) -> np.ndarray:
        return self._pixels.copy()

    # ── fills ───────────────────────────────────────────────────────

    def clear(self, color: Color = BLACK) -> None:
        self._pixels[:] = _bgr(color)

    def fill_rect(self, x: float, y: float, w: float, h: float, color: Color) -> None:
        x1, y1 = max(int(round(x)), 0), max(int(round(y)), 0)
        x2 = min(int(round(x + w)), self.width)
        y2 = min(int(round(y + h)), self.height)
        if x2 > x1 and y2 > y1:
            self._pixels[y1:y2, x1:x2] = _bgr(color)

    # ── images ──────────────────────────────────────────────────────

    def draw_image(self, frame: np.ndarray) -> None:
        """Stretch *frame* over the whole surface."""
        frame = _to_bgr(frame)
        fh, fw = frame.shape[:2]
        if fw <= 0 or fh <= 0:
            return
        if (fw, fh) == (self.width, self.height):
            self._pixels[:] = frame
        else:
            self._pixels[:] = cv2.resize(frame, (self.width, self.height),
                                         interpolation=cv2.INTER_AREA)

    def draw_cover(self, frame: np.ndarray, x: float, y: float,
                   w: float, h: float, mask: Optional[np.ndarray] = None) -> None:
        """Aspect-fill *frame* into the box ``(x, y, w, h)``.

        Parts of the box outside the surface are clipped.  When *mask*
        (box-sized, uint8) is given only pixels where it is non-zero are
        written.
        """
        dx1, dy1 = int(round(x)), int(round(y))
        box_w = int(round(x + w)) - dx1
        box_h = int(round(y + h)) - dy1
        if box_w <= 0 or box_h <= 0:
            return
        frame = _to_bgr(frame)
        fh, fw = frame.shape[:2]
        if fw <= 0 or fh <= 0:
            return

        x1, y1, x2, y2 = cover_crop_pixels(fw, fh, box_w, box_h)
        region = frame[y1:y2, x1:x2]
        shrinking = region.shape[1] > box_w
        interp = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
        resized = cv2.resize(region, (box_w, box_h), interpolation=interp)
        self._paste(resized, dx1, dy1, mask)

    def draw_cover_circle(self, frame: np.ndarray, cx: float, cy: float,
                          diameter: float) -> None:
        """Aspect-fill *frame* into a circle clipped at ``(cx, cy)``."""
        d = int(round(diameter))
        if d <= 0:
            return
        r = d / 2.0
        mask = np.zeros((d, d), dtype=np.uint8)
        cv2.circle(mask, (d // 2, d // 2), int(r), 255, -1, cv2.LINE_8)
        self.draw_cover(frame, cx - r, cy - r, d, d, mask=mask)

    def _paste(self, img: np.ndarray, dx: int, dy: int,
               mask: Optional[np.ndarray]) -> None:
        ih, iw = img.shape[:2]
        sx1, sy1 = max(dx, 0), max(dy, 0)
        sx2 = min(dx + iw, self.width)
        sy2 = min(dy + ih, self.height)
        if sx2 <= sx1 or sy2 <= sy1:
            return
        src = img[sy1 - dy:sy2 - dy, sx1 - dx:sx2 - dx]
        roi = self._pixels[sy1:sy2, sx1:sx2]
        if mask is None:
            roi[:] = src
        else:
            m = mask[sy1 - dy:sy2 - dy, sx1 - dx:sx2 - dx]
            np.copyto(roi, src, where=m[:, :, np.newaxis] > 0)

    # ── strokes / text ──────────────────────────────────────────────

    def stroke_circle(self, cx: float, cy: float, radius: float,
                      color: Color, thickness: int) -> None:
        cv2.circle(self._pixels, (int(round(cx)), int(round(cy))),
                   int(round(radius)), _bgr(color), max(1, int(thickness)),
                   cv2.LINE_AA)

    def draw_hline(self, y: float, color: Color, thickness: int) -> None:
        """Full-width horizontal line centred on *y*."""
        yi = int(round(y))
        cv2.line(self._pixels, (0, yi), (self.width - 1, yi), _bgr(color),
                 max(1, int(thickness)))

    def draw_text_centered(self, text: str, cx: float, cy: float,
                           color: Color, px_height: float) -> None:
        """Draw *text* centred on ``(cx, cy)`` with capitals ~*px_height* tall."""
        font = cv2.FONT_HERSHEY_SIMPLEX
        scale = max(px_height / _HERSHEY_CAP_PX, 0.1)
        thickness = max(1, int(round(scale * 2)))
        (tw, th), _ = cv2.getTextSize(text, font, scale, thickness)
        org = (int(round(cx - tw / 2)), int(round(cy + th / 2)))
        cv2.putText(self._pixels, text, org, font, scale, _bgr(color),
                    thickness, cv2.LINE_AA)
