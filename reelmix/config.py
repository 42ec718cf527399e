"""Recorder settings.

A single :class:`RecorderSettings` dataclass carries every tunable the
engine reads.  Settings round-trip through plain dicts / JSON so a host
application can persist them next to its own preferences.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


# Resolution name → landscape (width, height)
RESOLUTIONS: Dict[str, Tuple[int, int]] = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
}

SUPPORTED_FPS = (30, 60)

SOURCE_LOSS_IGNORE = "ignore"  # keep sampling the last (frozen) frame
SOURCE_LOSS_STOP = "stop"      # stop the session automatically
SOURCE_LOSS_POLICIES = (SOURCE_LOSS_IGNORE, SOURCE_LOSS_STOP)


@dataclass
class RecorderSettings:
    """Tunables shared by the controller, encoder, editor and exporter."""

    timeslice_ms: int = 100               # encoder chunk interval
    split_guard_seconds: float = 0.2      # min distance of a split from a segment edge
    seek_timeout_seconds: float = 5.0     # export: max wait for one seek
    export_trailing_seconds: float = 0.5  # export: settle time before finalising
    source_loss_policy: str = SOURCE_LOSS_IGNORE
    encoder_profiles: List[str] = field(default_factory=lambda: ["vp9", "vp8"])
    camera_width: int = 1280
    camera_height: int = 720
    default_overlay_x: float = 85.0
    default_overlay_y: float = 85.0

    def __post_init__(self) -> None:
        if self.timeslice_ms <= 0:
            raise ValueError("timeslice_ms must be > 0")
        if self.split_guard_seconds < 0:
            raise ValueError("split_guard_seconds must be >= 0")
        if self.seek_timeout_seconds <= 0:
            raise ValueError("seek_timeout_seconds must be > 0")
        if self.export_trailing_seconds < 0:
            raise ValueError("export_trailing_seconds must be >= 0")
        if self.source_loss_policy not in SOURCE_LOSS_POLICIES:
            raise ValueError(
                f"source_loss_policy must be one of {SOURCE_LOSS_POLICIES}"
            )
        if not self.encoder_profiles:
            raise ValueError("encoder_profiles must not be empty")

    def to_dict(self) -> dict:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["encoder_profiles"] = list(self.encoder_profiles)
        return d

    @staticmethod
    def from_dict(d: dict) -> "RecorderSettings":
        """Build settings from a dict, ignoring unknown keys for forward compat."""
        known = {f.name for f in fields(RecorderSettings)}
        filtered = {k: v for k, v in d.items() if k in known}
        return RecorderSettings(**filtered)


def load_settings(path: str) -> RecorderSettings:
    """Read settings from a JSON file.  A missing file yields defaults."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.info("No settings file at %s, using defaults", path)
        return RecorderSettings()
    return RecorderSettings.from_dict(data)


def save_settings(path: str, settings: RecorderSettings) -> None:
    """Write *settings* to *path* as indented JSON."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, indent=2)
