"""Shared utilities used by multiple modules."""

import logging
import subprocess
import sys
import time
from datetime import datetime
from typing import Collection, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


def ffmpeg_exe() -> str:
    """Return path to the ffmpeg binary bundled via imageio-ffmpeg."""
    import imageio_ffmpeg
    return imageio_ffmpeg.get_ffmpeg_exe()


def subprocess_kwargs() -> dict:
    """Extra kwargs to hide the console window on Windows."""
    kw: dict = {}
    if sys.platform == "win32":
        si = subprocess.STARTUPINFO()
        si.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        kw["startupinfo"] = si
        kw["creationflags"] = subprocess.CREATE_NO_WINDOW
    return kw


def precise_sleep(seconds: float) -> None:
    """Hybrid sleep: coarse sleep then spin-wait for sub-ms accuracy."""
    if seconds <= 0:
        return
    # Sleep most of the time (leave 2ms for spin-wait)
    coarse = seconds - 0.002
    if coarse > 0:
        time.sleep(coarse)
    target = time.perf_counter() + (seconds - max(coarse, 0))
    while time.perf_counter() < target:
        pass


def fmt_duration(seconds: float) -> str:
    """Format seconds as m:ss."""
    s = int(seconds)
    m = s // 60
    return f"{m}:{s % 60:02d}"


_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def make_session_id(when: Optional[datetime] = None, taken: Collection[str] = ()) -> str:
    """Time-derived session id, e.g. ``07-Mar-2025_09-05-03``.

    When that id is in *taken*, a counter is appended (``..._2``, ``..._3``).
    """
    now = when or datetime.now()
    base = (
        f"{now.day:02d}-{_MONTHS[now.month - 1]}-{now.year}"
        f"_{now.hour:02d}-{now.minute:02d}-{now.second:02d}"
    )
    session_id, n = base, 1
    while session_id in taken:
        n += 1
        session_id = f"{base}_{n}"
    return session_id


def make_edit_id(source_id: str, epoch_ms: Optional[int] = None) -> str:
    """Id for a session re-rendered from *source_id* by the editor."""
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    return f"EDIT_{source_id}_{epoch_ms}"


def even_dimensions(w: int, h: int) -> Tuple[int, int]:
    """Round both dimensions up to even numbers (required by yuv420p)."""
    return w + (w % 2), h + (h % 2)


# ── Streaming encoder profiles ──────────────────────────────────────

# Profile ID → (display name, video codec args, audio codec args)
ENCODER_PROFILES: Dict[str, Tuple[str, List[str], List[str]]] = {
    "vp9": (
        "VP9 / Opus",
        ["-c:v", "libvpx-vp9", "-deadline", "realtime", "-cpu-used", "8",
         "-row-mt", "1", "-crf", "32", "-b:v", "0"],
        ["-c:a", "libopus", "-b:a", "128k"],
    ),
    "vp8": (
        "VP8 / Opus",
        ["-c:v", "libvpx", "-deadline", "realtime", "-cpu-used", "8",
         "-b:v", "4M"],
        ["-c:a", "libopus", "-b:a", "128k"],
    ),
}

# Container produced natively by every profile
OUTPUT_FORMAT = "webm"


def encoder_display_name(profile_id: str) -> str:
    """Human-readable name for an encoder profile ID."""
    profile = ENCODER_PROFILES.get(profile_id)
    return profile[0] if profile else profile_id


def build_encoder_args(profile_id: str, with_audio: bool) -> List[str]:
    """Return ffmpeg output arguments for the given profile.

    Returns ``[...video args..., "-pix_fmt", "yuv420p", ...audio args...]``;
    audio args are omitted when *with_audio* is False.
    """
    profile = ENCODER_PROFILES.get(profile_id)
    if profile is None:
        raise ValueError(f"Unknown encoder profile: {profile_id}")
    _, video_args, audio_args = profile
    args = list(video_args) + ["-pix_fmt", "yuv420p"]
    if with_audio:
        args += audio_args
    return args
