"""Stream encoder — turns composited frames plus mixed audio into WebM chunks.

The encoder is a thin lifecycle wrapper around a *backend* (by default
an ffmpeg subprocess).  Frames are pushed with :meth:`StreamEncoder.write_frame`;
every timeslice the encoder forwards pending audio to the backend and
collects whatever encoded bytes the backend has produced as one chunk.
Nothing is emitted while paused.
Chunks are emitted in order and their concatenation is the final
recording.
"""

import logging
import os
import queue
import subprocess
import sys
import threading
import time
from typing import Callable, List, Optional

import numpy as np

from PySide6.QtCore import QObject, Signal

from .config import RecorderSettings
from .errors import EncoderError
from .utils import (
    ffmpeg_exe as _ffmpeg_exe,
    subprocess_kwargs as _subprocess_kwargs,
    build_encoder_args as _build_encoder_args,
    encoder_display_name,
    OUTPUT_FORMAT,
)

logger = logging.getLogger(__name__)

INACTIVE = "inactive"
RECORDING = "recording"
PAUSED = "paused"

# Time given to ffmpeg to reject its arguments before we trust the launch
_LAUNCH_CHECK_SECONDS = 0.05
_READ_SIZE = 65536

# Raw frames buffered ahead of ffmpeg before live frames are dropped
MAX_PENDING_FRAMES = 16


class FfmpegEncoderBackend:
    """One ffmpeg process encoding raw BGR video (+ f32le audio) to WebM.

    Video goes to ffmpeg's stdin, audio to an extra pipe fd, and the
    WebM stream comes back on stdout where a reader thread collects it.
    Each input pipe has its own writer thread fed from a queue, so a
    caller never blocks on ffmpeg and one input never starves the other.
    """

    def __init__(self, profile_id: str, max_pending_frames: int = MAX_PENDING_FRAMES) -> None:
        self.profile_id = profile_id
        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._out = bytearray()
        self._out_lock = threading.Lock()
        self._video_queue: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=max_pending_frames)
        self._video_thread: Optional[threading.Thread] = None
        self._video_error: Optional[Exception] = None
        self._audio_file = None
        self._audio_queue: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._audio_thread: Optional[threading.Thread] = None

    @property
    def has_audio(self) -> bool:
        return self._audio_file is not None

    def open(self, width: int, height: int, fps: int,
             audio_rate: Optional[int] = None, audio_channels: int = 2) -> None:
        """Launch ffmpeg.  Raises :class:`EncoderError` if it exits at once."""
        cmd = [
            _ffmpeg_exe(), "-hide_banner", "-loglevel", "error", "-y",
            "-f", "rawvideo",
            "-vcodec", "rawvideo",
            "-s", f"{width}x{height}",
            "-pix_fmt", "bgr24",
            "-r", str(fps),
            "-i", "pipe:0",
        ]
        pass_fds: tuple = ()
        audio_r = audio_w = None
        if audio_rate:
            if sys.platform == "win32":
                logger.warning("Audio pipe not supported on Windows, encoding video only")
            else:
                audio_r, audio_w = os.pipe()
                pass_fds = (audio_r,)
                cmd += [
                    "-f", "f32le",
                    "-ar", str(audio_rate),
                    "-ac", str(audio_channels),
                    "-i", f"pipe:{audio_r}",
                ]
        with_audio = audio_r is not None
        cmd += ["-map", "0:v"]
        if with_audio:
            cmd += ["-map", "1:a"]
        cmd += _build_encoder_args(self.profile_id, with_audio)
        cmd += ["-f", OUTPUT_FORMAT, "pipe:1"]

        logger.info("Launching ffmpeg with profile %s: %s", self.profile_id, " ".join(cmd))
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                pass_fds=pass_fds,
                **_subprocess_kwargs(),
            )
        except OSError as exc:
            if audio_r is not None:
                os.close(audio_r)
                os.close(audio_w)
            raise EncoderError(f"Cannot launch ffmpeg: {exc}") from exc
        if audio_r is not None:
            os.close(audio_r)

        time.sleep(_LAUNCH_CHECK_SECONDS)
        if self._proc.poll() is not None:
            stderr_early = self._proc.stderr.read().decode(errors="replace")[:500] if self._proc.stderr else ""
            if audio_w is not None:
                os.close(audio_w)
            raise EncoderError(
                f"{encoder_display_name(self.profile_id)} failed to start: {stderr_early.strip()}"
            )

        self._reader = threading.Thread(target=self._read_loop, name="ffmpeg-out", daemon=True)
        self._reader.start()
        self._video_thread = threading.Thread(
            target=self._video_loop, name="ffmpeg-video", daemon=True,
        )
        self._video_thread.start()
        if audio_w is not None:
            self._audio_file = os.fdopen(audio_w, "wb")
            self._audio_thread = threading.Thread(
                target=self._audio_loop, name="ffmpeg-audio", daemon=True,
            )
            self._audio_thread.start()

    def _read_loop(self) -> None:
        stdout = self._proc.stdout
        while True:
            data = stdout.read1(_READ_SIZE)
            if not data:
                break
            with self._out_lock:
                self._out += data

    def _video_loop(self) -> None:
        stdin = self._proc.stdin
        while True:
            data = self._video_queue.get()
            if data is None:
                break
            if self._video_error is not None:
                continue  # keep draining so blocked producers wake up
            try:
                stdin.write(data)
            except (BrokenPipeError, OSError) as exc:
                logger.warning("Video pipe closed: %s", exc)
                self._video_error = exc
        try:
            stdin.close()
        except (BrokenPipeError, OSError):
            pass

    def _audio_loop(self) -> None:
        audio_file = self._audio_file
        while True:
            data = self._audio_queue.get()
            if data is None:
                break
            try:
                audio_file.write(data)
                audio_file.flush()
            except (BrokenPipeError, OSError) as exc:
                logger.warning("Audio pipe closed: %s", exc)
                break
        try:
            audio_file.close()
        except OSError:
            pass

    def write_video(self, data: bytes, block: bool = False) -> None:
        """Queue one raw frame.

        Raises :class:`queue.Full` when *block* is False and ffmpeg is
        ``max_pending_frames`` behind, or the pipe error once ffmpeg has
        stopped reading.
        """
        if self._video_error is not None:
            raise self._video_error
        self._video_queue.put(data, block=block)

    def write_audio(self, data: bytes) -> None:
        if self._audio_file is not None and data:
            self._audio_queue.put(data)

    def read_output(self) -> bytes:
        """Encoded bytes produced since the previous call."""
        with self._out_lock:
            data = bytes(self._out)
            self._out.clear()
        return data

    def _close_inputs(self, timeout: float) -> None:
        # Both sentinels go in before either join: ffmpeg may need more of
        # one input before it drains the other
        if self._video_thread is not None:
            self._video_queue.put(None)
        if self._audio_thread is not None:
            self._audio_queue.put(None)
        if self._video_thread is not None:
            self._video_thread.join(timeout=timeout)
            self._video_thread = None
        if self._audio_thread is not None:
            self._audio_thread.join(timeout=timeout)
            self._audio_thread = None
        self._audio_file = None

    def finish(self, timeout: float = 60.0) -> bytes:
        """Close the inputs, wait for ffmpeg and return the remaining output."""
        self._close_inputs(timeout)
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._proc.kill()
            self._proc.wait()
        if self._reader is not None:
            self._reader.join(timeout=5.0)
        stderr_text = self._proc.stderr.read().decode(errors="replace") if self._proc.stderr else ""
        tail = self.read_output()
        if self._proc.returncode != 0:
            err_msg = stderr_text.strip()[-800:] or "Unknown ffmpeg error"
            logger.error("ffmpeg exited with rc=%s: %s", self._proc.returncode, err_msg)
        return tail

    def abort(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.kill()
            self._proc.wait()
        self._close_inputs(timeout=5.0)


BackendFactory = Callable[[str], object]


class StreamEncoder(QObject):
    """Continuous encoder with pause/resume and timesliced chunk output.

    With a *scheduler*, chunks are collected every ``timeslice_ms``.
    Without one (offline rendering), the caller drives :meth:`emit_chunk`.
    """

    chunk_ready = Signal(object)  # bytes
    state_changed = Signal(str)

    def __init__(
        self,
        width: int,
        height: int,
        fps: int,
        audio_track=None,
        scheduler=None,
        settings: Optional[RecorderSettings] = None,
        backend_factory: Optional[BackendFactory] = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self.width = width
        self.height = height
        self.fps = fps
        self._audio = audio_track
        self._scheduler = scheduler
        self._settings = settings or RecorderSettings()
        self._backend_factory = backend_factory or FfmpegEncoderBackend
        self._backend = None
        self._profile_id: Optional[str] = None
        self._handle = None
        self._state = INACTIVE
        self._chunks: List[bytes] = []
        self._dropped_chunks = 0
        self._dropped_frames = 0
        self._frames_written = 0

    # ── properties ──────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def profile_id(self) -> Optional[str]:
        """Encoder profile that actually launched."""
        return self._profile_id

    @property
    def chunks(self) -> List[bytes]:
        return list(self._chunks)

    @property
    def dropped_chunks(self) -> int:
        return self._dropped_chunks

    @property
    def dropped_frames(self) -> int:
        return self._dropped_frames

    @property
    def frames_written(self) -> int:
        return self._frames_written

    def _set_state(self, state: str) -> None:
        self._state = state
        self.state_changed.emit(state)

    # ── lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Launch the backend (walking the profile fallback chain) and begin."""
        if self._state != INACTIVE:
            raise EncoderError("Encoder already started")

        audio_rate = self._audio.sample_rate if self._audio is not None else None
        audio_channels = self._audio.channels if self._audio is not None else 2
        profiles = self._settings.encoder_profiles
        failures = []
        for profile_id in profiles:
            backend = self._backend_factory(profile_id)
            try:
                backend.open(self.width, self.height, self.fps, audio_rate, audio_channels)
            except Exception as exc:
                logger.warning("Encoder %s failed to launch: %s",
                               encoder_display_name(profile_id), exc)
                failures.append(f"{profile_id}: {exc}")
                continue
            if profile_id != profiles[0]:
                logger.info("Using fallback encoder %s (originally %s)", profile_id, profiles[0])
            self._backend = backend
            self._profile_id = profile_id
            break
        else:
            logger.error("All encoders failed to launch")
            raise EncoderError("All encoders failed to launch: " + "; ".join(failures))

        if self._audio is not None:
            # Audio captured before the first frame is not part of the recording
            self._audio.discard()
        if self._scheduler is not None:
            self._handle = self._scheduler.tick(self.emit_chunk, self._settings.timeslice_ms)
        self._set_state(RECORDING)

    def write_frame(self, frame: np.ndarray) -> None:
        """Append one composited frame (ignored unless recording)."""
        if self._state != RECORDING:
            return
        try:
            # Live recording drops frames rather than stall the tick;
            # offline rendering waits for ffmpeg
            self._backend.write_video(frame.tobytes(), block=self._scheduler is None)
            self._frames_written += 1
        except Exception as exc:
            self._dropped_frames += 1
            if self._dropped_frames == 1:
                logger.warning("Encoder dropped a frame: %r", exc)

    def emit_chunk(self) -> None:
        """Forward pending audio and emit whatever the backend has encoded."""
        if self._state != RECORDING:
            return
        try:
            if self._audio is not None:
                samples = self._audio.read()
                if len(samples):
                    self._backend.write_audio(np.asarray(samples, dtype=np.float32).tobytes())
            data = self._backend.read_output()
        except Exception as exc:
            self._dropped_chunks += 1
            logger.warning("Dropped encoder chunk: %s", exc)
            return
        self._push(data)

    def _push(self, data: bytes) -> None:
        if data:
            self._chunks.append(data)
            self.chunk_ready.emit(data)

    def pause(self) -> None:
        if self._state == RECORDING:
            self._set_state(PAUSED)

    def resume(self) -> None:
        if self._state == PAUSED:
            if self._audio is not None:
                self._audio.discard()
            self._set_state(RECORDING)

    def stop(self) -> bytes:
        """Flush the backend and return the concatenation of all chunks."""
        if self._state == INACTIVE:
            return b"".join(self._chunks)
        self._cancel_tick()
        if self._state == RECORDING:
            self.emit_chunk()
        try:
            tail = self._backend.finish()
        except Exception as exc:
            self._dropped_chunks += 1
            logger.warning("Dropped final encoder chunk: %s", exc)
            tail = b""
        self._push(tail)
        self._set_state(INACTIVE)
        buffer = b"".join(self._chunks)
        logger.info(
            "Encoder stopped: %d frames, %d chunks, %d bytes (%d dropped chunks)",
            self._frames_written, len(self._chunks), len(buffer), self._dropped_chunks,
        )
        return buffer

    def abort(self) -> None:
        """Tear down without producing output."""
        self._cancel_tick()
        if self._backend is not None:
            try:
                self._backend.abort()
            except Exception as exc:
                logger.warning("Error aborting encoder: %s", exc)
        if self._state != INACTIVE:
            self._set_state(INACTIVE)

    def _cancel_tick(self) -> None:
        if self._handle is not None:
            self._scheduler.cancel(self._handle)
            self._handle = None
