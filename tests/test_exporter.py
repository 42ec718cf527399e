"""Tests for reelmix.exporter — frame-accurate re-rendering of a timeline."""

import functools
import os

import cv2
import numpy as np
import pytest

from reelmix.config import RecorderSettings
from reelmix.encoder import StreamEncoder
from reelmix.errors import ExportError, ExportTimeoutError
from reelmix.exporter import ExportRenderer, VideoFileSource, export_session
from reelmix.models import DEFAULT_QUALITY, RecordingSession
from reelmix.store import MemoryRecordStore
from reelmix.timeline import SegmentTimeline

from conftest import BackendRecorder, FakeSeekableSource


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def renderer(backends: BackendRecorder, sleeps: list) -> ExportRenderer:
    return ExportRenderer(
        encoder_factory=functools.partial(StreamEncoder, backend_factory=backends),
        sleep=sleeps.append,
    )


@pytest.fixture
def split_timeline() -> SegmentTimeline:
    tl = SegmentTimeline(10.0)
    tl.split(4.0)
    return tl


# ── ExportRenderer ──────────────────────────────────────────────────


class TestExportRenderer:
    def test_frame_counts_and_order(self, renderer, split_timeline, backends) -> None:
        source = FakeSeekableSource()
        buffer = renderer.render(source, split_timeline.segments, 30)
        assert len(source.seeks) == 300
        first, second = source.seeks[:120], source.seeks[120:]
        assert first[0] == pytest.approx(0.0)
        assert first[-1] == pytest.approx(119 / 30)
        assert second[0] == pytest.approx(4.0)
        assert second[-1] == pytest.approx(4.0 + 179 / 30)
        assert all(b > a for a, b in zip(first, first[1:]))
        assert all(b > a for a, b in zip(second, second[1:]))
        assert backends.active.frames == 300
        assert buffer.endswith(b"END")

    def test_reordered_segments_visited_in_timeline_order(self, renderer, split_timeline) -> None:
        split_timeline.move_segment(1, -1)
        source = FakeSeekableSource()
        renderer.render(source, split_timeline.segments, 30)
        assert source.seeks[0] == pytest.approx(4.0)
        assert source.seeks[180] == pytest.approx(0.0)

    def test_surface_matches_source_size(self, renderer, split_timeline, backends) -> None:
        renderer.render(FakeSeekableSource(63, 47), split_timeline.segments, 30)
        assert backends.active.opened_with[:3] == (64, 48, 30)

    def test_unknown_size_falls_back(self, renderer, split_timeline, backends) -> None:
        renderer.render(FakeSeekableSource(0, 0), split_timeline.segments, 30)
        assert backends.active.opened_with[:2] == (1280, 720)

    def test_progress_monotonic(self, renderer, split_timeline) -> None:
        values = []
        renderer.progress.connect(values.append)
        renderer.render(FakeSeekableSource(), split_timeline.segments, 30)
        assert len(values) == 300
        assert all(b > a for a, b in zip(values, values[1:]))
        assert values[-1] == pytest.approx(1.0)
        assert renderer.progress_value == pytest.approx(1.0)
        assert renderer.frames_done == renderer.total_frames == 300

    def test_chunks_per_timeslice(self, renderer, split_timeline, backends) -> None:
        renderer.render(FakeSeekableSource(), split_timeline.segments, 30)
        # 100 ms at 30 fps: a chunk every 3 frames
        assert backends.active._batch == 100

    def test_trailing_buffer(self, renderer, split_timeline, sleeps) -> None:
        renderer.render(FakeSeekableSource(), split_timeline.segments, 30)
        assert sleeps == [pytest.approx(0.5)]

    def test_finished_signal(self, renderer, split_timeline) -> None:
        done = []
        renderer.finished.connect(done.append)
        buffer = renderer.render(FakeSeekableSource(), split_timeline.segments, 30)
        assert done == [buffer]

    def test_seek_timeout(self, backends, split_timeline) -> None:
        settings = RecorderSettings(seek_timeout_seconds=0.25)
        errors = []
        renderer = ExportRenderer(
            settings=settings,
            encoder_factory=functools.partial(StreamEncoder, backend_factory=backends),
            sleep=lambda s: None,
        )
        renderer.error.connect(errors.append)
        with pytest.raises(ExportTimeoutError) as exc_info:
            renderer.render(FakeSeekableSource(stall_at=5.0), split_timeline.segments, 30)
        assert exc_info.value.source_time == pytest.approx(5.0)
        assert exc_info.value.timeout == pytest.approx(0.25)
        assert backends.active.aborted
        assert len(errors) == 1

    def test_no_frames_is_error(self, renderer) -> None:
        tl = SegmentTimeline(0.02)
        with pytest.raises(ExportError):
            renderer.render(FakeSeekableSource(), tl.segments, 30)

    def test_frames_drawn_stretched(self, backends, split_timeline) -> None:
        class Capture(StreamEncoder):
            seen = []

            def write_frame(self, frame):
                Capture.seen.append(int(frame[0, 0, 0]))
                super().write_frame(frame)

        renderer = ExportRenderer(
            encoder_factory=functools.partial(Capture, backend_factory=backends),
            sleep=lambda s: None,
        )
        renderer.render(FakeSeekableSource(), split_timeline.segments, 30)
        # Brightness encodes int(t * 10) of the seek target
        assert Capture.seen[0] == 0
        assert Capture.seen[120] == 40


# ── export_session ──────────────────────────────────────────────────


class TestExportSession:
    def test_new_session_saved(self, renderer, sample_session: RecordingSession, split_timeline) -> None:
        written = {}

        def factory(path: str) -> FakeSeekableSource:
            with open(path, "rb") as f:
                written["data"] = f.read()
            written["path"] = path
            return FakeSeekableSource()

        split_timeline.delete_segment(split_timeline.segments[0].id)
        store = MemoryRecordStore()
        edited = export_session(sample_session, split_timeline, store,
                                renderer=renderer, source_factory=factory)

        assert written["data"] == sample_session.video_buffer
        assert not os.path.exists(written["path"])
        assert edited.id.startswith(f"EDIT_{sample_session.id}_")
        assert edited.duration_seconds == 6
        assert edited.layout == sample_session.layout
        assert edited.quality == sample_session.quality
        assert edited.has_video
        assert edited.metadata["sourceId"] == sample_session.id
        assert store.get(edited.id) is edited
        # Source session untouched
        assert sample_session.duration_seconds == 10

    def test_source_closed_after_failure(self, backends, sample_session, split_timeline) -> None:
        sources = []

        def factory(path: str) -> FakeSeekableSource:
            sources.append(FakeSeekableSource(stall_at=0.0))
            return sources[-1]

        renderer = ExportRenderer(
            settings=RecorderSettings(seek_timeout_seconds=0.1),
            encoder_factory=functools.partial(StreamEncoder, backend_factory=backends),
            sleep=lambda s: None,
        )
        store = MemoryRecordStore()
        with pytest.raises(ExportTimeoutError):
            export_session(sample_session, split_timeline, store,
                           renderer=renderer, source_factory=factory)
        assert sources[0].closed
        assert len(store) == 0

    def test_session_without_video(self, renderer, split_timeline) -> None:
        empty = RecordingSession("x", "t", 1, "OVERLAY_CIRCLE", DEFAULT_QUALITY)
        with pytest.raises(ExportError):
            export_session(empty, split_timeline, renderer=renderer)


# ── VideoFileSource ─────────────────────────────────────────────────


@pytest.fixture
def gray_ramp_video(tmp_path) -> str:
    """30 frames at 30 fps; frame *n* has brightness 8*n."""
    path = str(tmp_path / "ramp.avi")
    writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"MJPG"), 30, (64, 48))
    if not writer.isOpened():
        pytest.skip("MJPG writer unavailable")
    for n in range(30):
        writer.write(np.full((48, 64, 3), 8 * n, dtype=np.uint8))
    writer.release()
    return path


def _frame_index(source: VideoFileSource) -> int:
    return int(round(float(source.current_frame().mean()) / 8))


class TestVideoFileSource:
    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ExportError):
            VideoFileSource(str(tmp_path / "nope.webm"))

    def test_dimensions(self, gray_ramp_video: str) -> None:
        source = VideoFileSource(gray_ramp_video)
        try:
            assert (source.native_width(), source.native_height()) == (64, 48)
        finally:
            source.close()

    def test_forward_and_backward_seeks(self, gray_ramp_video: str) -> None:
        source = VideoFileSource(gray_ramp_video)
        try:
            source.request_seek(0.5)
            assert source.wait_seeked(5.0)
            assert abs(_frame_index(source) - 15) <= 1
            source.request_seek(0.8)
            assert source.wait_seeked(5.0)
            assert abs(_frame_index(source) - 24) <= 1
            source.request_seek(0.1)
            assert source.wait_seeked(5.0)
            assert abs(_frame_index(source) - 3) <= 1
        finally:
            source.close()
