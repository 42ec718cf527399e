"""Tests for reelmix.capture — source acquisition and release."""

import pytest

from reelmix.capture import CaptureSourceManager, CaptureSource
from reelmix.errors import AcquisitionError

from conftest import FakeDeviceProvider, solid_frame


class TestCaptureSourceManager:
    def test_acquire_all(self) -> None:
        provider = FakeDeviceProvider()
        mgr = CaptureSourceManager(provider)
        screen = mgr.acquire_screen(30)
        camera = mgr.acquire_camera("default", 1280, 720, 30)
        mic = mgr.acquire_microphone("default", 48000)
        assert mgr.held == [screen, camera, mic]

    def test_permission_error_is_denied(self) -> None:
        mgr = CaptureSourceManager(FakeDeviceProvider(deny={"camera"}))
        with pytest.raises(AcquisitionError) as exc_info:
            mgr.acquire_camera("2", 1280, 720, 30)
        err = exc_info.value
        assert err.reason == AcquisitionError.DENIED
        assert err.kind == "camera"
        assert err.device_ref == "2"
        assert mgr.held == []

    def test_other_error_is_unavailable(self) -> None:
        mgr = CaptureSourceManager(FakeDeviceProvider(broken={"screen"}))
        with pytest.raises(AcquisitionError) as exc_info:
            mgr.acquire_screen(30)
        assert exc_info.value.reason == AcquisitionError.UNAVAILABLE
        assert "exploded" in str(exc_info.value)

    def test_acquisition_error_passes_through(self) -> None:
        class Blocking(FakeDeviceProvider):
            def open_screen(self, device_ref, fps):
                raise AcquisitionError("screen", device_ref, AcquisitionError.BLOCKED)

        mgr = CaptureSourceManager(Blocking())
        with pytest.raises(AcquisitionError) as exc_info:
            mgr.acquire_screen(30)
        assert exc_info.value.reason == AcquisitionError.BLOCKED

    def test_system_audio_absent(self) -> None:
        mgr = CaptureSourceManager(FakeDeviceProvider(system_audio=False))
        assert mgr.acquire_system_audio(48000) is None
        assert mgr.held == []

    def test_system_audio_present(self) -> None:
        mgr = CaptureSourceManager(FakeDeviceProvider(system_audio=True))
        sig = mgr.acquire_system_audio(48000)
        assert sig.kind == "system_audio"

    def test_release_all_newest_first(self) -> None:
        closed = []
        provider = FakeDeviceProvider()
        mgr = CaptureSourceManager(provider)
        mgr.acquire_screen(30)
        mgr.acquire_microphone("default", 48000)
        for src in provider.opened:
            src.close = (lambda s=src: closed.append(s.kind))
        mgr.release_all()
        assert closed == ["microphone", "screen"]
        assert mgr.held == []

    def test_release_continues_after_close_error(self) -> None:
        provider = FakeDeviceProvider()
        mgr = CaptureSourceManager(provider)
        screen = mgr.acquire_screen(30)
        mic = mgr.acquire_microphone("default", 48000)

        def boom() -> None:
            raise OSError("already gone")

        mic.close = boom
        mgr.release_all()
        assert screen.closed
        assert mgr.held == []


class TestCaptureSource:
    def test_not_ready_until_first_frame(self) -> None:
        src = CaptureSource()
        assert not src.is_ready()
        assert src.current_frame() is None
        src._store_frame(solid_frame(32, 16, (1, 2, 3)))
        assert src.is_ready()
        assert (src.native_width(), src.native_height()) == (32, 16)
        assert not src.is_ended()


class TestAcquisitionError:
    def test_message(self) -> None:
        err = AcquisitionError("camera", "default", AcquisitionError.DENIED, "user said no")
        assert str(err) == "Cannot acquire camera (default): denied (user said no)"
