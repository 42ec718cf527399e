"""Core data models for reelmix.

Defines the value objects passed between the recorder, the segment
editor and the export renderer.  All models support JSON-friendly
serialization via ``to_dict()`` / ``from_dict()``; the encoded video
buffer itself never goes into a dict.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import json
import uuid

from .config import RESOLUTIONS, SUPPORTED_FPS


@dataclass(frozen=True)
class QualityConfig:
    """Target resolution name and frame rate of a recording."""
    resolution: str = "1080p"
    fps: int = 30

    def __post_init__(self) -> None:
        if self.resolution not in RESOLUTIONS:
            raise ValueError(f"Unsupported resolution: {self.resolution}")
        if self.fps not in SUPPORTED_FPS:
            raise ValueError(f"Unsupported fps: {self.fps}")

    @property
    def landscape_size(self) -> tuple:
        """(width, height) of the resolution in landscape orientation."""
        return RESOLUTIONS[self.resolution]

    def to_dict(self) -> dict:
        return {"resolution": self.resolution, "fps": self.fps}

    @staticmethod
    def from_dict(d: dict) -> "QualityConfig":
        return QualityConfig(resolution=d["resolution"], fps=int(d["fps"]))


@dataclass(frozen=True)
class OverlayPosition:
    """Camera overlay centre in percent of the canvas (0–100 per axis)."""
    x: float = 85.0
    y: float = 85.0

    @staticmethod
    def clamped(x: float, y: float) -> "OverlayPosition":
        """Build a position with both axes clamped to [0, 100]."""
        return OverlayPosition(
            x=max(0.0, min(100.0, float(x))),
            y=max(0.0, min(100.0, float(y))),
        )

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}

    @staticmethod
    def from_dict(d: dict) -> "OverlayPosition":
        return OverlayPosition.clamped(d.get("x", 85.0), d.get("y", 85.0))


@dataclass
class Segment:
    """One contiguous source-time range kept in the edited timeline.

    Times are seconds into the source recording.  ``display_color`` is
    only used by editor UIs to tell neighbouring segments apart.
    """

    id: str
    source_start: float
    source_end: float
    display_color: str = "#ffffff"

    def __post_init__(self) -> None:
        if not self.source_end > self.source_start:
            raise ValueError(
                f"Segment end ({self.source_end}) must be after start ({self.source_start})"
            )

    @property
    def duration(self) -> float:
        return self.source_end - self.source_start

    @staticmethod
    def create(source_start: float, source_end: float,
               display_color: str = "#ffffff") -> "Segment":
        """Factory that auto-generates a UUID for the segment."""
        return Segment(
            id=str(uuid.uuid4()),
            source_start=source_start,
            source_end=source_end,
            display_color=display_color,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start": self.source_start,
            "end": self.source_end,
            "duration": self.duration,
            "color": self.display_color,
        }

    @staticmethod
    def from_dict(d: dict) -> "Segment":
        return Segment(
            id=d["id"],
            source_start=d["start"],
            source_end=d["end"],
            display_color=d.get("color", "#ffffff"),
        )


@dataclass(frozen=True)
class RecordingSession:
    """A finished recording.

    Created when a recording stops (or an export finishes) and never
    mutated afterwards; edits produce a new session with a new id.
    ``video_buffer`` holds the complete encoded WebM stream and is empty
    when the encoder produced no chunks.
    """

    id: str
    created_at: str  # ISO-8601
    duration_seconds: int
    layout: str
    quality: QualityConfig
    video_buffer: bytes = b""
    metadata: dict = field(default_factory=dict)
    video_type: str = "webm"

    @property
    def has_video(self) -> bool:
        return len(self.video_buffer) > 0

    @property
    def overlay_position(self) -> Optional[OverlayPosition]:
        pos = self.metadata.get("overlayPosition")
        return OverlayPosition.from_dict(pos) if pos else None

    def to_dict(self) -> dict:
        """Serialize everything except the video buffer."""
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "durationSeconds": self.duration_seconds,
            "layout": self.layout,
            "quality": self.quality.to_dict(),
            "metadata": dict(self.metadata),
            "videoType": self.video_type,
        }

    @staticmethod
    def from_dict(d: dict, video_buffer: bytes = b"") -> "RecordingSession":
        """Reconstruct a session from ``to_dict()`` output plus its buffer."""
        return RecordingSession(
            id=d["id"],
            created_at=d["createdAt"],
            duration_seconds=int(d["durationSeconds"]),
            layout=d["layout"],
            quality=QualityConfig.from_dict(d["quality"]),
            video_buffer=video_buffer,
            metadata=dict(d.get("metadata", {})),
            video_type=d.get("videoType", "webm"),
        )

    def metadata_document(self) -> dict:
        """The fixed-shape document stored next to the video in a bundle."""
        return {
            "id": self.id,
            "created": self.created_at,
            "duration": self.duration_seconds,
            "layout": self.layout,
            "quality": self.quality.to_dict(),
        }

    def metadata_json(self) -> str:
        return json.dumps(self.metadata_document(), indent=2)


def now_iso() -> str:
    """Current local time as an ISO-8601 string."""
    return datetime.now().isoformat(timespec="seconds")


DEFAULT_QUALITY = QualityConfig()
