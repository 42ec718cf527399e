"""Tests for reelmix.encoder.FfmpegEncoderBackend against the bundled ffmpeg."""

import functools
import sys

import numpy as np
import pytest

from reelmix.audio_mixer import AudioMixer, MIX_SAMPLE_RATE
from reelmix.encoder import FfmpegEncoderBackend, StreamEncoder
from reelmix.exporter import VideoFileSource
from reelmix.scheduler import ManualScheduler

from conftest import FakeAudioSignal, solid_frame

WIDTH, HEIGHT, FPS = 160, 120, 30
EBML_MAGIC = b"\x1a\x45\xdf\xa3"


def _tone_track(seconds_per_read: float = 0.1):
    """Mixed track whose every read yields *seconds_per_read* of a 440 Hz tone."""
    n = int(MIX_SAMPLE_RATE * seconds_per_read)
    t = np.arange(n, dtype=np.float32) / MIX_SAMPLE_RATE
    tone = (0.2 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    mixer = AudioMixer()
    mixer.connect_input(FakeAudioSignal(block=np.stack([tone, tone], axis=1)))
    return mixer.get_output_track()


def _decode_check(tmp_path, buffer: bytes, at: float):
    path = str(tmp_path / "out.webm")
    with open(path, "wb") as f:
        f.write(buffer)
    source = VideoFileSource(path)
    try:
        assert (source.native_width(), source.native_height()) == (WIDTH, HEIGHT)
        source.request_seek(at)
        assert source.wait_seeked(10.0)
        frame = source.current_frame()
        assert frame is not None
        return frame.copy()
    finally:
        source.close()


# ── live recording ──────────────────────────────────────────────────


class TestLiveRecording:
    @pytest.mark.skipif(sys.platform == "win32", reason="audio pipe is POSIX only")
    def test_video_and_audio_at_frame_rate(self, tmp_path) -> None:
        sched = ManualScheduler()
        enc = StreamEncoder(
            WIDTH, HEIGHT, FPS,
            audio_track=_tone_track(),
            scheduler=sched,
            backend_factory=functools.partial(FfmpegEncoderBackend, max_pending_frames=1000),
        )
        frame = solid_frame(WIDTH, HEIGHT, (40, 90, 160))
        sched.tick(lambda: enc.write_frame(frame), 1000 / FPS)
        enc.start()
        assert enc._backend.has_audio
        sched.advance(3.0)
        buffer = enc.stop()

        assert enc.frames_written == 90
        assert enc.dropped_frames == 0
        assert buffer.startswith(EBML_MAGIC)
        assert buffer == b"".join(enc.chunks)
        _decode_check(tmp_path, buffer, 1.0)

    def test_video_only(self, tmp_path) -> None:
        sched = ManualScheduler()
        enc = StreamEncoder(
            WIDTH, HEIGHT, FPS,
            scheduler=sched,
            backend_factory=functools.partial(FfmpegEncoderBackend, max_pending_frames=1000),
        )
        frame = solid_frame(WIDTH, HEIGHT, (200, 200, 200))
        sched.tick(lambda: enc.write_frame(frame), 1000 / FPS)
        enc.start()
        assert not enc._backend.has_audio
        sched.advance(1.0)
        buffer = enc.stop()
        assert enc.frames_written == 30
        assert buffer.startswith(EBML_MAGIC)
        _decode_check(tmp_path, buffer, 0.5)


# ── offline rendering ───────────────────────────────────────────────


class TestOfflineRendering:
    def test_frames_land_in_order(self, tmp_path) -> None:
        enc = StreamEncoder(WIDTH, HEIGHT, FPS)
        enc.start()
        for n in range(30):
            enc.write_frame(np.full((HEIGHT, WIDTH, 3), 8 * n, dtype=np.uint8))
            if n % 3 == 2:
                enc.emit_chunk()
        buffer = enc.stop()
        assert enc.frames_written == 30
        frame = _decode_check(tmp_path, buffer, 0.5)
        # Frame 15 of a 8-per-frame brightness ramp
        assert abs(float(frame.mean()) - 120) <= 12


# ── process lifecycle ───────────────────────────────────────────────


class TestProcess:
    def test_abort_kills_ffmpeg(self) -> None:
        backend = FfmpegEncoderBackend("vp9")
        backend.open(WIDTH, HEIGHT, FPS)
        backend.write_video(solid_frame(WIDTH, HEIGHT, (0, 0, 0)).tobytes())
        backend.abort()
        assert backend._proc.poll() is not None

    def test_finish_returns_remaining_output(self) -> None:
        backend = FfmpegEncoderBackend("vp8")
        backend.open(WIDTH, HEIGHT, FPS)
        for _ in range(10):
            backend.write_video(solid_frame(WIDTH, HEIGHT, (10, 20, 30)).tobytes(), block=True)
        data = backend.read_output() + backend.finish()
        assert backend._proc.returncode == 0
        assert data.startswith(EBML_MAGIC)
