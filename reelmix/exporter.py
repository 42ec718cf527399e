"""Export renderer — re-renders an edited timeline into a new recording.

For every segment, in timeline order, the renderer seeks the source
video to each frame time, *waits* for the seek to complete, draws the
decoded frame onto a fresh surface and feeds it to a fresh stream
encoder.  Seeks are explicit request/complete handshakes with a
bounded wait, so a frame is never drawn from a stale position and a
stuck decoder surfaces as :class:`ExportTimeoutError` instead of a hang.

The exported stream is video only.
"""

import logging
import math
import os
import tempfile
import threading
import time
from typing import Callable, List, Optional, Sequence

import cv2
import numpy as np

from PySide6.QtCore import QObject, Signal

from .config import RecorderSettings
from .encoder import StreamEncoder
from .errors import ExportError, ExportTimeoutError
from .models import RecordingSession, Segment, now_iso
from .surface import CompositingSurface
from .timeline import SegmentTimeline, frames_for_duration
from .utils import even_dimensions, make_edit_id

logger = logging.getLogger(__name__)

EXPORT_FPS = 30

# Fallback canvas when the container reports no dimensions
_FALLBACK_SIZE = (1280, 720)

# Half a millisecond: frame timestamps at or before target + this count as "at" it
_SEEK_EPS = 0.0005


class VideoFileSource:
    """Frame-accurate seekable decoder over a video file.

    Decoding runs on a worker thread.  :meth:`request_seek` hands it a
    target time; the worker decodes forward to the last frame whose
    timestamp is at or before the target (reopening the file for
    backward seeks) and then sets the seek-completed event that
    :meth:`wait_seeked` blocks on.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._cap = cv2.VideoCapture(path)
        if not self._cap.isOpened():
            self._cap.release()
            raise ExportError(f"Cannot open {path}")
        self._width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

        self._frame: Optional[np.ndarray] = None
        self._frame_t = -1.0
        self._pending = None  # (frame, t) decoded one step ahead
        self._eof = False

        self._lock = threading.Lock()
        self._target = 0.0
        self._request = threading.Event()
        self._seeked = threading.Event()
        self._closing = False
        self._thread = threading.Thread(target=self._worker, name="export-decode", daemon=True)
        self._thread.start()

    # ── CaptureSource-style accessors ───────────────────────────────

    def is_ready(self) -> bool:
        return self._frame is not None

    def native_width(self) -> int:
        return self._width

    def native_height(self) -> int:
        return self._height

    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            return self._frame

    @property
    def current_time(self) -> float:
        """Timestamp (s) of the frame currently held."""
        return self._frame_t

    # ── seeking ─────────────────────────────────────────────────────

    def request_seek(self, t: float) -> None:
        self._seeked.clear()
        self._target = float(t)
        self._request.set()

    def wait_seeked(self, timeout: float) -> bool:
        """Block until the last requested seek completed.  False on timeout."""
        return self._seeked.wait(timeout)

    def close(self) -> None:
        self._closing = True
        self._request.set()
        self._thread.join(timeout=5.0)
        self._cap.release()

    # ── worker ──────────────────────────────────────────────────────

    def _worker(self) -> None:
        while True:
            self._request.wait()
            self._request.clear()
            if self._closing:
                return
            try:
                self._seek_to(self._target)
            except Exception as exc:
                # Leave the event unset; the renderer reports a timeout
                logger.error("Decode error seeking to %.3f: %s", self._target, exc)
                continue
            self._seeked.set()

    def _reopen(self) -> None:
        self._cap.release()
        self._cap = cv2.VideoCapture(self.path)
        self._frame_t = -1.0
        self._pending = None
        self._eof = False

    def _read(self):
        ok, frame = self._cap.read()
        if not ok or frame is None:
            self._eof = True
            return None
        return frame, self._cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0

    def _seek_to(self, target: float) -> None:
        if self._frame is not None and target + _SEEK_EPS < self._frame_t:
            self._reopen()

        current = (self._frame, self._frame_t) if self._frame is not None else None
        while not self._eof:
            if self._pending is None:
                self._pending = self._read()
                if self._pending is None:
                    break
            t = self._pending[1]
            if current is not None and t > target + _SEEK_EPS:
                break
            current = self._pending
            self._pending = None
            if t > target + _SEEK_EPS:
                # Target precedes the first frame; show the first frame
                break

        if current is not None:
            with self._lock:
                self._frame, self._frame_t = current


class ExportRenderer(QObject):
    """Renders segments of a seekable source into one encoded buffer."""

    progress = Signal(float)  # 0.0–1.0
    finished = Signal(object)  # bytes
    error = Signal(str)

    def __init__(
        self,
        settings: Optional[RecorderSettings] = None,
        encoder_factory: Optional[Callable[..., StreamEncoder]] = None,
        sleep: Callable[[float], None] = time.sleep,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._settings = settings or RecorderSettings()
        self._encoder_factory = encoder_factory or StreamEncoder
        self._sleep = sleep
        self._progress = 0.0
        self._frames_done = 0
        self._total_frames = 0

    @property
    def progress_value(self) -> float:
        """Frames rendered so far / total frames."""
        return self._progress

    @property
    def frames_done(self) -> int:
        return self._frames_done

    @property
    def total_frames(self) -> int:
        return self._total_frames

    def render(self, source, segments: Sequence[Segment], fps: int = EXPORT_FPS) -> bytes:
        """Walk *segments* in order and return the encoded result.

        Raises :class:`ExportTimeoutError` when a seek does not complete
        within ``seek_timeout_seconds``.
        """
        try:
            return self._render(source, segments, fps)
        except Exception as exc:
            logger.error("Export failed: %s", exc)
            self.error.emit(str(exc))
            raise

    def _render(self, source, segments: Sequence[Segment], fps: int) -> bytes:
        s = self._settings
        src_w, src_h = source.native_width(), source.native_height()
        if src_w <= 0 or src_h <= 0:
            src_w, src_h = _FALLBACK_SIZE
        w, h = even_dimensions(src_w, src_h)

        plan: List[int] = [frames_for_duration(seg.duration, fps) for seg in segments]
        self._total_frames = sum(plan)
        self._frames_done = 0
        self._progress = 0.0
        if self._total_frames == 0:
            raise ExportError("Timeline has no frames to export")

        surface = CompositingSurface(w, h)
        encoder = self._encoder_factory(w, h, fps, audio_track=None, scheduler=None, settings=s)
        encoder.start()
        # Collect a chunk per timeslice of rendered video
        chunk_every = max(1, int(round(s.timeslice_ms * fps / 1000.0)))
        logger.info("Exporting %d segments, %d frames at %dx%d",
                    len(segments), self._total_frames, w, h)

        try:
            for seg, count in zip(segments, plan):
                for i in range(count):
                    t = seg.source_start + i / fps
                    source.request_seek(t)
                    if not source.wait_seeked(s.seek_timeout_seconds):
                        raise ExportTimeoutError(t, s.seek_timeout_seconds)
                    frame = source.current_frame()
                    surface.clear()
                    if frame is not None:
                        surface.draw_image(frame)
                    encoder.write_frame(surface.pixels)

                    self._frames_done += 1
                    if self._frames_done % chunk_every == 0:
                        encoder.emit_chunk()
                    self._progress = self._frames_done / self._total_frames
                    self.progress.emit(self._progress)
        except Exception:
            encoder.abort()
            raise

        if s.export_trailing_seconds > 0:
            self._sleep(s.export_trailing_seconds)
        buffer = encoder.stop()
        logger.info("Export rendered %d frames, %d bytes", self._frames_done, len(buffer))
        self.finished.emit(buffer)
        return buffer


def export_session(
    session: RecordingSession,
    timeline: SegmentTimeline,
    store=None,
    fps: int = EXPORT_FPS,
    renderer: Optional[ExportRenderer] = None,
    source_factory: Callable[[str], object] = VideoFileSource,
) -> RecordingSession:
    """Render *timeline* over *session* into a new, stored session."""
    if not session.has_video:
        raise ExportError(f"Session {session.id} has no video")
    renderer = renderer or ExportRenderer()

    fd, path = tempfile.mkstemp(prefix="reelmix_export_", suffix=f".{session.video_type}")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(session.video_buffer)
        source = source_factory(path)
        try:
            buffer = renderer.render(source, timeline.segments, fps)
        finally:
            source.close()
    finally:
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning("Could not remove temp file %s: %s", path, exc)

    metadata = dict(session.metadata)
    metadata["sourceId"] = session.id
    metadata["segments"] = timeline.to_list()
    edited = RecordingSession(
        id=make_edit_id(session.id),
        created_at=now_iso(),
        duration_seconds=int(math.floor(timeline.total_duration + 0.5)),
        layout=session.layout,
        quality=session.quality,
        video_buffer=buffer,
        metadata=metadata,
        video_type=session.video_type,
    )
    if store is not None:
        store.save(edited)
    logger.info("Exported %s from %s", edited.id, session.id)
    return edited
