"""Capture sources — screen, camera, microphone and system audio.

Video sources grab frames on their own thread and keep only the most
recent one in a lock-protected slot; the compositor samples that slot
on its own cadence and never waits for a fresh frame.  Audio sources
queue every captured block until the mixer reads it.

:class:`CaptureSourceManager` acquires sources through a device
provider and owns them until :meth:`~CaptureSourceManager.release_all`.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

import cv2
import mss
import numpy as np

from .errors import AcquisitionError
from .utils import precise_sleep

logger = logging.getLogger(__name__)

SCREEN = "screen"
CAMERA = "camera"
MICROPHONE = "microphone"
SYSTEM_AUDIO = "system_audio"

DEFAULT_DEVICE = "default"

# Consecutive failed camera reads before the source counts as ended
_CAMERA_MAX_FAILURES = 30

# Substrings that identify loopback / "what you hear" input devices
_LOOPBACK_HINTS = ("loopback", "monitor of", "stereo mix", "blackhole", "soundflower")


class CaptureSource:
    """A live visual source handle.

    Subclasses fill the latest-frame slot via :meth:`_store_frame`.
    ``is_ready()`` is False until the first frame arrives.
    """

    kind: str = ""

    def __init__(self, device_ref: str = DEFAULT_DEVICE) -> None:
        self.device_ref = device_ref
        self._frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._width = 0
        self._height = 0
        self._ended = False

    def is_ready(self) -> bool:
        with self._frame_lock:
            return self._frame is not None

    def native_width(self) -> int:
        return self._width

    def native_height(self) -> int:
        return self._height

    def current_frame(self) -> Optional[np.ndarray]:
        """Most recent BGR frame, or None before the first one."""
        with self._frame_lock:
            return self._frame

    def is_ended(self) -> bool:
        """True once the underlying stream stopped delivering for good."""
        return self._ended

    def close(self) -> None:
        pass

    def _store_frame(self, frame: np.ndarray) -> None:
        h, w = frame.shape[:2]
        with self._frame_lock:
            self._frame = frame
            self._width = w
            self._height = h


class _ThreadedSource(CaptureSource):
    """Runs ``_capture_loop`` on a background thread until closed."""

    def __init__(self, device_ref: str, fps: int) -> None:
        super().__init__(device_ref)
        self._fps = max(1, int(fps))
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._running = True
        self._thread = threading.Thread(
            target=self._run, name=f"{self.kind}-capture", daemon=True,
        )
        self._thread.start()

    def close(self) -> None:
        self._running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _run(self) -> None:
        try:
            self._capture_loop()
        except Exception as exc:
            logger.error("%s capture error: %s", self.kind, exc)
            self._ended = True

    def _capture_loop(self) -> None:
        raise NotImplementedError

    def _pace(self, t0: float) -> None:
        """Frame-rate cap (precise timing)."""
        elapsed = time.perf_counter() - t0
        sleep_time = max(0.0, (1.0 / self._fps) - elapsed)
        if sleep_time > 0:
            precise_sleep(sleep_time)


class ScreenSource(_ThreadedSource):
    """Monitor capture via mss (GDI / X11 / Quartz)."""

    kind = SCREEN

    def __init__(self, monitor_index: int, fps: int,
                 device_ref: str = DEFAULT_DEVICE) -> None:
        super().__init__(device_ref, fps)
        self._monitor_index = monitor_index
        # mss handles are thread-bound, so probe geometry here and grab
        # frames with a fresh handle inside the capture thread.
        with mss.mss() as sct:
            if not 1 <= monitor_index < len(sct.monitors):
                raise AcquisitionError(
                    SCREEN, device_ref, AcquisitionError.UNAVAILABLE,
                    f"no monitor {monitor_index}",
                )
            mon = sct.monitors[monitor_index]
            self._width, self._height = mon["width"], mon["height"]

    def _capture_loop(self) -> None:
        with mss.mss() as sct:
            monitor = sct.monitors[self._monitor_index]
            while self._running:
                t0 = time.perf_counter()
                img = sct.grab(monitor)
                frame = np.asarray(img)  # BGRA
                self._store_frame(np.ascontiguousarray(frame[:, :, :3]))
                self._pace(t0)


class CameraSource(_ThreadedSource):
    """Webcam capture via OpenCV."""

    kind = CAMERA

    def __init__(self, index: int, width: int, height: int, fps: int,
                 device_ref: str = DEFAULT_DEVICE) -> None:
        super().__init__(device_ref, fps)
        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            raise AcquisitionError(
                CAMERA, device_ref, AcquisitionError.UNAVAILABLE,
                f"cannot open camera {index}",
            )
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._cap = cap
        self._width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)) or width
        self._height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)) or height

    def _capture_loop(self) -> None:
        failures = 0
        while self._running:
            t0 = time.perf_counter()
            ok, frame = self._cap.read()
            if ok and frame is not None:
                failures = 0
                self._store_frame(frame)
            else:
                failures += 1
                if failures >= _CAMERA_MAX_FAILURES:
                    logger.warning("Camera %s stopped delivering frames", self.device_ref)
                    self._ended = True
                    break
            self._pace(t0)

    def close(self) -> None:
        super().close()
        self._cap.release()


class SoundDeviceSource:
    """Microphone or loopback input captured through sounddevice.

    The PortAudio callback copies each block into a queue; :meth:`read`
    hands everything captured since the last call to the mixer.
    """

    def __init__(self, kind: str, device, sample_rate: int, channels: int,
                 device_ref: str = DEFAULT_DEVICE) -> None:
        import sounddevice as sd

        self.kind = kind
        self.device_ref = device_ref
        self.sample_rate = sample_rate
        self.channels = channels
        self._blocks: List[np.ndarray] = []
        self._lock = threading.Lock()
        self._stream = sd.InputStream(
            device=device,
            samplerate=sample_rate,
            channels=channels,
            dtype="float32",
            callback=self._on_block,
        )
        self._stream.start()

    def _on_block(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("%s input status: %s", self.kind, status)
        with self._lock:
            self._blocks.append(indata.copy())

    def read(self) -> np.ndarray:
        """All samples captured since the previous read, shape (n, channels)."""
        with self._lock:
            blocks, self._blocks = self._blocks, []
        if not blocks:
            return np.zeros((0, self.channels), dtype=np.float32)
        return np.concatenate(blocks, axis=0)

    def is_ready(self) -> bool:
        return self._stream.active

    def close(self) -> None:
        try:
            self._stream.stop()
        finally:
            self._stream.close()


# ── Device provider ─────────────────────────────────────────────────


def _parse_index(device_ref: str, default: int) -> int:
    if device_ref in ("", DEFAULT_DEVICE):
        return default
    try:
        return int(device_ref)
    except ValueError:
        raise AcquisitionError(
            "device", device_ref, AcquisitionError.UNAVAILABLE,
            "device reference must be 'default' or an index",
        ) from None


class LocalDeviceProvider:
    """Opens real devices: monitors (mss), cameras (OpenCV), audio (sounddevice)."""

    def open_screen(self, device_ref: str, fps: int) -> ScreenSource:
        source = ScreenSource(_parse_index(device_ref, 1), fps, device_ref)
        source.start()
        return source

    def open_camera(self, device_ref: str, width: int, height: int,
                    fps: int) -> CameraSource:
        source = CameraSource(_parse_index(device_ref, 0), width, height, fps, device_ref)
        source.start()
        return source

    def open_audio(self, kind: str, device_ref: str,
                   sample_rate: int) -> SoundDeviceSource:
        import sounddevice as sd

        device = None if device_ref in ("", DEFAULT_DEVICE) else _parse_index(device_ref, 0)
        info = sd.query_devices(device, "input")
        channels = max(1, min(int(info["max_input_channels"]), 2))
        try:
            return SoundDeviceSource(kind, device, sample_rate, channels, device_ref)
        except sd.PortAudioError as exc:
            raise AcquisitionError(
                kind, device_ref, AcquisitionError.DENIED, str(exc),
            ) from exc

    def find_system_audio_device(self) -> Optional[str]:
        """Index (as a device ref) of a loopback input, or None."""
        import sounddevice as sd

        for idx, dev in enumerate(sd.query_devices()):
            if dev["max_input_channels"] <= 0:
                continue
            name = dev["name"].lower()
            if any(hint in name for hint in _LOOPBACK_HINTS):
                return str(idx)
        return None


# ── Manager ─────────────────────────────────────────────────────────


class CaptureSourceManager:
    """Acquires capture sources for one recording attempt and releases them."""

    def __init__(self, provider=None) -> None:
        self._provider = provider or LocalDeviceProvider()
        self._sources: list = []

    @property
    def held(self) -> list:
        """Sources currently open, in acquisition order."""
        return list(self._sources)

    def _acquire(self, kind: str, device_ref: str, opener: Callable[[], object]):
        try:
            source = opener()
        except AcquisitionError:
            raise
        except PermissionError as exc:
            raise AcquisitionError(kind, device_ref, AcquisitionError.DENIED, str(exc)) from exc
        except Exception as exc:
            raise AcquisitionError(kind, device_ref, AcquisitionError.UNAVAILABLE, str(exc)) from exc
        self._sources.append(source)
        logger.info("Acquired %s (%s)", kind, device_ref)
        return source

    def acquire_screen(self, fps: int, device_ref: str = DEFAULT_DEVICE):
        return self._acquire(
            SCREEN, device_ref, lambda: self._provider.open_screen(device_ref, fps),
        )

    def acquire_camera(self, device_ref: str, width: int, height: int, fps: int):
        return self._acquire(
            CAMERA, device_ref,
            lambda: self._provider.open_camera(device_ref, width, height, fps),
        )

    def acquire_microphone(self, device_ref: str, sample_rate: int):
        return self._acquire(
            MICROPHONE, device_ref,
            lambda: self._provider.open_audio(MICROPHONE, device_ref, sample_rate),
        )

    def acquire_system_audio(self, sample_rate: int):
        """Open the loopback input if the platform exposes one, else None."""
        try:
            device_ref = self._provider.find_system_audio_device()
        except Exception as exc:
            raise AcquisitionError(
                SYSTEM_AUDIO, DEFAULT_DEVICE, AcquisitionError.UNAVAILABLE, str(exc),
            ) from exc
        if device_ref is None:
            logger.info("No system audio device available, recording without it")
            return None
        return self._acquire(
            SYSTEM_AUDIO, device_ref,
            lambda: self._provider.open_audio(SYSTEM_AUDIO, device_ref, sample_rate),
        )

    def release_all(self) -> None:
        """Close every held source, newest first."""
        while self._sources:
            source = self._sources.pop()
            try:
                source.close()
            except Exception as exc:
                logger.warning("Error releasing %s: %s", getattr(source, "kind", "source"), exc)
