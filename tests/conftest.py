"""Shared pytest fixtures and fakes for reelmix tests.

Nothing here touches real devices or ffmpeg. Capture sources, audio
inputs, the encoder backend and the export source are in-memory fakes,
and time is driven by :class:`ManualScheduler`.
"""

import functools
import queue
from typing import List, Optional

import numpy as np
import pytest

from PySide6.QtCore import QCoreApplication

from reelmix.capture import CaptureSourceManager
from reelmix.config import RecorderSettings
from reelmix.encoder import StreamEncoder
from reelmix.errors import EncoderError
from reelmix.models import QualityConfig, RecordingSession
from reelmix.scheduler import ManualScheduler


@pytest.fixture(scope="session", autouse=True)
def qt_core_app():
    """A QCoreApplication so QObject signals behave as in a host app."""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


# ── Video sources ──────────────────────────────────────────────────

def solid_frame(w: int, h: int, bgr) -> np.ndarray:
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    frame[:] = bgr
    return frame


class FakeVideoSource:
    """A capture source that always holds one solid-colour frame."""

    def __init__(self, kind: str, width: int = 320, height: int = 180,
                 bgr=(0, 0, 255), ready: bool = True) -> None:
        self.kind = kind
        self.device_ref = "default"
        self.frame = solid_frame(width, height, bgr)
        self.ready = ready
        self.ended = False
        self.closed = False

    def is_ready(self) -> bool:
        return self.ready

    def native_width(self) -> int:
        return self.frame.shape[1]

    def native_height(self) -> int:
        return self.frame.shape[0]

    def current_frame(self) -> Optional[np.ndarray]:
        return self.frame if self.ready else None

    def is_ended(self) -> bool:
        return self.ended

    def close(self) -> None:
        self.closed = True


class FakeAudioSignal:
    """Audio input returning a fixed block per read."""

    def __init__(self, kind: str = "microphone", block: Optional[np.ndarray] = None) -> None:
        self.kind = kind
        self.block = block if block is not None else np.zeros((480, 1), dtype=np.float32)
        self.reads = 0
        self.closed = False

    def read(self) -> np.ndarray:
        self.reads += 1
        return self.block

    def close(self) -> None:
        self.closed = True


# ── Device provider ────────────────────────────────────────────────

class FakeDeviceProvider:
    """Device provider with per-kind failure injection.

    ``deny`` kinds raise PermissionError, ``broken`` kinds RuntimeError.
    """

    def __init__(self, deny=(), broken=(), system_audio: bool = False) -> None:
        self.deny = set(deny)
        self.broken = set(broken)
        self.system_audio = system_audio
        self.opened: List[object] = []

    def _check(self, kind: str) -> None:
        if kind in self.deny:
            raise PermissionError(f"{kind} access denied")
        if kind in self.broken:
            raise RuntimeError(f"{kind} exploded")

    def open_screen(self, device_ref, fps):
        self._check("screen")
        src = FakeVideoSource("screen", 320, 180, (0, 0, 255))
        self.opened.append(src)
        return src

    def open_camera(self, device_ref, width, height, fps):
        self._check("camera")
        src = FakeVideoSource("camera", 160, 120, (0, 255, 0))
        self.opened.append(src)
        return src

    def open_audio(self, kind, device_ref, sample_rate):
        self._check(kind)
        sig = FakeAudioSignal(kind)
        self.opened.append(sig)
        return sig

    def find_system_audio_device(self):
        return "7" if self.system_audio else None


# ── Encoder backend ────────────────────────────────────────────────

class FakeEncoderBackend:
    """Records everything written; one output byte per video frame."""

    fail_profiles: set = set()

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        self.opened_with = None
        self.frames = 0
        self.audio_bytes = 0
        self.audio_writes = 0
        self._unread = 0
        self._batch = 0
        self.finished = False
        self.aborted = False
        self.fail_reads = 0
        self.full = False
        self.blocking: List[bool] = []

    def open(self, width, height, fps, audio_rate=None, audio_channels=2):
        if self.profile_id in self.fail_profiles:
            raise EncoderError(f"{self.profile_id} unsupported")
        self.opened_with = (width, height, fps, audio_rate, audio_channels)

    def write_video(self, data: bytes, block: bool = False) -> None:
        self.blocking.append(block)
        if self.full:
            raise queue.Full
        self.frames += 1
        self._unread += 1

    def write_audio(self, data: bytes) -> None:
        self.audio_writes += 1
        self.audio_bytes += len(data)

    def read_output(self) -> bytes:
        if self.fail_reads:
            self.fail_reads -= 1
            raise OSError("pipe hiccup")
        if not self._unread:
            return b""
        self._batch += 1
        data = bytes([self._batch % 256]) * self._unread
        self._unread = 0
        return data

    def finish(self) -> bytes:
        self.finished = True
        return b"END"

    def abort(self) -> None:
        self.aborted = True


class BackendRecorder:
    """Backend factory that remembers every backend it built."""

    def __init__(self, fail_profiles=()) -> None:
        self.fail_profiles = set(fail_profiles)
        self.instances: List[FakeEncoderBackend] = []

    def __call__(self, profile_id: str) -> FakeEncoderBackend:
        backend = FakeEncoderBackend(profile_id)
        backend.fail_profiles = self.fail_profiles
        self.instances.append(backend)
        return backend

    @property
    def active(self) -> FakeEncoderBackend:
        return [b for b in self.instances if b.opened_with is not None][-1]


# ── Export source ──────────────────────────────────────────────────

class FakeSeekableSource:
    """Seekable source whose frame brightness encodes the seek time."""

    def __init__(self, width: int = 64, height: int = 48,
                 stall_at: Optional[float] = None) -> None:
        self.width = width
        self.height = height
        self.stall_at = stall_at
        self.seeks: List[float] = []
        self._frame = None
        self._stalled = False
        self.closed = False

    def native_width(self) -> int:
        return self.width

    def native_height(self) -> int:
        return self.height

    def request_seek(self, t: float) -> None:
        self.seeks.append(t)
        self._stalled = self.stall_at is not None and t >= self.stall_at
        level = int(t * 10) % 256
        self._frame = solid_frame(self.width, self.height, (level, level, level))

    def wait_seeked(self, timeout: float) -> bool:
        return not self._stalled

    def current_frame(self):
        return self._frame

    def close(self) -> None:
        self.closed = True


# ── Fixtures ───────────────────────────────────────────────────────

@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def settings() -> RecorderSettings:
    return RecorderSettings()


@pytest.fixture
def backends() -> BackendRecorder:
    return BackendRecorder()


@pytest.fixture
def encoder_factory(backends: BackendRecorder):
    return functools.partial(StreamEncoder, backend_factory=backends)


@pytest.fixture
def provider() -> FakeDeviceProvider:
    return FakeDeviceProvider()


@pytest.fixture
def devices(provider: FakeDeviceProvider) -> CaptureSourceManager:
    return CaptureSourceManager(provider)


@pytest.fixture
def quality_720() -> QualityConfig:
    return QualityConfig(resolution="720p", fps=30)


@pytest.fixture
def sample_session() -> RecordingSession:
    """A finished 10-second session with a small fake buffer."""
    return RecordingSession(
        id="07-Mar-2025_09-05-03",
        created_at="2025-03-07T09:05:03",
        duration_seconds=10,
        layout="OVERLAY_CIRCLE",
        quality=QualityConfig(resolution="720p", fps=30),
        video_buffer=b"\x1a\x45\xdf\xa3" + b"\x00" * 60,
        metadata={"overlayPosition": {"x": 85.0, "y": 85.0}},
    )
