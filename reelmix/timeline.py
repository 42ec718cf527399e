"""Segment timeline — the non-destructive edit model of one recording.

The timeline holds an ordered list of :class:`Segment` objects, each a
``[source_start, source_end)`` range of the source recording.  Playing
the segments back to back gives the *virtual* timeline; its length is
the sum of the segment durations.  Edits (split, delete, move, reset)
only rewrite this list, never the source.  Like the keyframe editor it
keeps an undo/redo stack (deep-copy snapshots, max 50 entries).

Rejected edits return ``False`` and leave the timeline untouched.
"""

import copy
import logging
import math
from typing import Iterator, List, Optional, Tuple

from .config import RecorderSettings
from .models import RecordingSession, Segment

logger = logging.getLogger(__name__)

MAX_UNDO = 50  # maximum undo history depth
DEFAULT_GUARD = 0.2  # seconds; no split closer than this to a segment edge

# Display colours handed to new segments (first one seeds the timeline)
SEGMENT_COLORS = [
    "#ffffff", "#4f8cff", "#ff6b6b", "#51cf66", "#fcc419",
    "#cc5de8", "#22b8cf", "#ff922b", "#94d82d", "#f06595",
]


def frames_for_duration(duration: float, fps: int) -> int:
    """Whole frames that fit in *duration* seconds at *fps* (floored)."""
    # The epsilon keeps 4.0 * 30 from flooring to 119 on float noise
    return max(0, int(math.floor(duration * fps + 1e-9)))


class SegmentTimeline:
    """Ordered segments over a source of ``source_duration`` seconds."""

    def __init__(self, source_duration: float, guard: float = DEFAULT_GUARD) -> None:
        if source_duration <= 0:
            raise ValueError("source_duration must be > 0")
        self.source_duration = float(source_duration)
        self.guard = guard
        self.segments: List[Segment] = [self._full_range()]

        # Undo / redo stacks: each entry is a deep-copied segment list
        self._undo_stack: List[List[Segment]] = []
        self._redo_stack: List[List[Segment]] = []

    @classmethod
    def for_session(cls, session: RecordingSession,
                    settings: Optional[RecorderSettings] = None) -> "SegmentTimeline":
        """Timeline over a finished recording, using the configured split guard."""
        settings = settings or RecorderSettings()
        return cls(session.duration_seconds, guard=settings.split_guard_seconds)

    def _full_range(self) -> Segment:
        return Segment.create(0.0, self.source_duration, SEGMENT_COLORS[0])

    # ── snapshot helpers ────────────────────────────────────────────

    def _snapshot(self) -> List[Segment]:
        return copy.deepcopy(self.segments)

    def _push_undo(self) -> None:
        self._undo_stack.append(self._snapshot())
        if len(self._undo_stack) > MAX_UNDO:
            self._undo_stack.pop(0)
        self._redo_stack.clear()

    def undo(self) -> bool:
        """Restore the previous segment list.  Returns True if successful."""
        if not self._undo_stack:
            return False
        self._redo_stack.append(self._snapshot())
        self.segments = self._undo_stack.pop()
        return True

    def redo(self) -> bool:
        """Re-apply the last undone edit.  Returns True if successful."""
        if not self._redo_stack:
            return False
        self._undo_stack.append(self._snapshot())
        self.segments = self._redo_stack.pop()
        return True

    @property
    def can_undo(self) -> bool:
        return len(self._undo_stack) > 0

    @property
    def can_redo(self) -> bool:
        return len(self._redo_stack) > 0

    def clear_history(self) -> None:
        self._undo_stack.clear()
        self._redo_stack.clear()

    # ── queries ─────────────────────────────────────────────────────

    @property
    def total_duration(self) -> float:
        return sum(s.duration for s in self.segments)

    def virtual_start(self, index: int) -> float:
        """Virtual time at which segment *index* begins."""
        return sum(s.duration for s in self.segments[:index])

    def index_of(self, segment_id: str) -> int:
        for i, s in enumerate(self.segments):
            if s.id == segment_id:
                return i
        return -1

    def map_virtual_to_source(self, t: float) -> Optional[Tuple[int, float]]:
        """``(segment_index, source_time)`` for virtual time *t*.

        Returns None when *t* lies outside ``[0, total_duration)``.
        """
        if t < 0:
            return None
        cum = 0.0
        for i, s in enumerate(self.segments):
            if t < cum + s.duration:
                return i, s.source_start + (t - cum)
            cum += s.duration
        return None

    def map_source_to_virtual(self, source_time: float) -> Optional[float]:
        """Virtual time at which *source_time* plays, or None if it was cut.

        When segments overlap (they never do after plain edits) the first
        one in playback order wins.
        """
        cum = 0.0
        for s in self.segments:
            if s.source_start <= source_time < s.source_end:
                return cum + (source_time - s.source_start)
            cum += s.duration
        return None

    def frame_plan(self, fps: int) -> Iterator[Tuple[int, int, float]]:
        """Yield ``(segment_index, frame_index, source_time)`` for export.

        Each segment contributes ``floor(duration * fps)`` frames at
        ``source_start + i / fps``.
        """
        for idx, s in enumerate(self.segments):
            for i in range(frames_for_duration(s.duration, fps)):
                yield idx, i, s.source_start + i / fps

    def total_frames(self, fps: int) -> int:
        return sum(frames_for_duration(s.duration, fps) for s in self.segments)

    # ── edits ───────────────────────────────────────────────────────

    def _next_color(self) -> str:
        used = {s.display_color for s in self.segments}
        for color in SEGMENT_COLORS:
            if color not in used:
                return color
        return SEGMENT_COLORS[len(self.segments) % len(SEGMENT_COLORS)]

    def split(self, at: float) -> bool:
        """Split the segment playing at virtual time *at* into two."""
        hit = self.map_virtual_to_source(at)
        if hit is None:
            return False
        idx, split_time = hit
        seg = self.segments[idx]
        if (split_time - seg.source_start <= self.guard
                or seg.source_end - split_time <= self.guard):
            logger.debug("Split at %.3f rejected: within %.2fs of a segment edge", at, self.guard)
            return False

        self._push_undo()
        head = Segment(seg.id, seg.source_start, split_time, seg.display_color)
        tail = Segment.create(split_time, seg.source_end, self._next_color())
        self.segments[idx:idx + 1] = [head, tail]
        return True

    def delete_segment(self, segment_id: str) -> bool:
        """Remove a segment; the last remaining one cannot be deleted."""
        if len(self.segments) <= 1:
            return False
        idx = self.index_of(segment_id)
        if idx < 0:
            return False
        self._push_undo()
        del self.segments[idx]
        return True

    def move_segment(self, index: int, direction: int) -> bool:
        """Swap segment *index* with its neighbour (*direction* -1 or +1)."""
        if direction not in (-1, 1):
            raise ValueError("direction must be -1 or +1")
        other = index + direction
        if not (0 <= index < len(self.segments)) or not (0 <= other < len(self.segments)):
            return False
        self._push_undo()
        self.segments[index], self.segments[other] = self.segments[other], self.segments[index]
        return True

    def reset(self) -> None:
        """Back to one segment spanning the whole source."""
        self._push_undo()
        self.segments = [self._full_range()]

    def to_list(self) -> List[dict]:
        return [s.to_dict() for s in self.segments]
