"""Recording controller — the session state machine.

Wires capture sources, the audio mixer, the compositor and the stream
encoder together for one recording, keeps elapsed-time accounting and
assembles the finished :class:`RecordingSession` on stop.

States::

    idle → starting → recording ⇄ paused → stopping → idle

Every periodic callback runs on the injected :class:`Scheduler`, so the
controller itself never blocks or sleeps.
"""

import logging
import math
from typing import Callable, Optional

from PySide6.QtCore import QObject, Signal

from .audio_mixer import AudioMixer, MIX_SAMPLE_RATE
from .capture import CaptureSourceManager, DEFAULT_DEVICE, SCREEN
from .compositor import Compositor, CompositorState
from .config import RecorderSettings, SOURCE_LOSS_STOP
from .encoder import StreamEncoder
from .errors import InvalidStateError
from .layouts import DEFAULT_LAYOUT, Layout, canvas_size
from .models import (
    DEFAULT_QUALITY, OverlayPosition, QualityConfig, RecordingSession, now_iso,
)
from .surface import CompositingSurface
from .utils import make_session_id

logger = logging.getLogger(__name__)

IDLE = "idle"
STARTING = "starting"
RECORDING = "recording"
PAUSED = "paused"
STOPPING = "stopping"


class RecordingController(QObject):
    """Drives one recording at a time."""

    state_changed = Signal(str)
    recording_finished = Signal(object)  # RecordingSession
    source_lost = Signal(str)            # source kind

    def __init__(
        self,
        scheduler,
        devices: Optional[CaptureSourceManager] = None,
        encoder_factory: Optional[Callable[..., StreamEncoder]] = None,
        settings: Optional[RecorderSettings] = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._scheduler = scheduler
        self._devices = devices or CaptureSourceManager()
        self._encoder_factory = encoder_factory or StreamEncoder
        self._settings = settings or RecorderSettings()
        self._state = IDLE

        self._layout: Optional[Layout] = None
        self._quality: Optional[QualityConfig] = None
        self._screen = None
        self._mixer: Optional[AudioMixer] = None
        self._compositor: Optional[Compositor] = None
        self._encoder: Optional[StreamEncoder] = None

        self._elapsed_accum = 0.0
        self._run_started: Optional[float] = None
        # Ids already handed out, so two stops in the same second stay distinct
        self._session_ids: set = set()

    # ── properties ──────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def settings(self) -> RecorderSettings:
        return self._settings

    @property
    def elapsed_seconds(self) -> float:
        """Wall-clock time spent recording, excluding pauses."""
        if self._run_started is None:
            return self._elapsed_accum
        return self._elapsed_accum + (self._scheduler.now() - self._run_started)

    @property
    def canvas(self) -> Optional[CompositingSurface]:
        """The live compositing surface (for host previews), or None."""
        return self._compositor.surface if self._compositor else None

    @property
    def overlay_position(self) -> Optional[OverlayPosition]:
        return self._compositor.state.overlay_position if self._compositor else None

    def _set_state(self, state: str) -> None:
        if state != self._state:
            logger.debug("Recorder state %s -> %s", self._state, state)
            self._state = state
            self.state_changed.emit(state)

    # ── lifecycle ───────────────────────────────────────────────────

    def start(
        self,
        layout: Layout = DEFAULT_LAYOUT,
        quality: QualityConfig = DEFAULT_QUALITY,
        use_camera: bool = True,
        camera_device: str = DEFAULT_DEVICE,
        mic_device: Optional[str] = DEFAULT_DEVICE,
        capture_system_audio: bool = False,
    ) -> None:
        """Acquire sources and begin recording.

        Any failure releases whatever was acquired, returns to ``idle``
        and re-raises (:class:`AcquisitionError` for devices,
        :class:`EncoderError` for the encoder).  *mic_device* ``None``
        records without a microphone.
        """
        if self._state != IDLE:
            raise InvalidStateError("start", self._state)
        self._set_state(STARTING)
        s = self._settings
        fps = quality.fps
        try:
            width, height = canvas_size(quality, layout)
            screen = self._devices.acquire_screen(fps)
            camera = None
            if use_camera:
                camera = self._devices.acquire_camera(
                    camera_device, s.camera_width, s.camera_height, fps,
                )

            mixer = AudioMixer()
            self._mixer = mixer
            if mic_device is not None:
                mixer.connect_input(self._devices.acquire_microphone(mic_device, MIX_SAMPLE_RATE))
            if capture_system_audio:
                system = self._devices.acquire_system_audio(MIX_SAMPLE_RATE)
                if system is not None:
                    mixer.connect_input(system)

            state = CompositorState(
                target_width=width,
                target_height=height,
                target_fps=fps,
                layout=layout,
                overlay_position=OverlayPosition.clamped(
                    s.default_overlay_x, s.default_overlay_y,
                ),
            )
            compositor = Compositor(state, screen, camera)
            audio_track = mixer.get_output_track() if mixer.inputs else None
            encoder = self._encoder_factory(
                width, height, fps,
                audio_track=audio_track,
                scheduler=self._scheduler,
                settings=s,
            )
            self._encoder = encoder
            encoder.start()
        except Exception as exc:
            logger.error("Recording start failed: %s", exc)
            self._teardown(abort_encoder=True)
            self._set_state(IDLE)
            raise

        self._layout = layout
        self._quality = quality
        self._screen = screen
        self._compositor = compositor
        self._elapsed_accum = 0.0
        self._run_started = self._scheduler.now()
        compositor.start(self._scheduler, self._on_frame)
        self._set_state(RECORDING)
        logger.info("Recording started: %s %dx%d @ %d fps", layout.kind, width, height, fps)

    def pause(self) -> None:
        if self._state != RECORDING:
            raise InvalidStateError("pause", self._state)
        self._compositor.stop()
        self._encoder.pause()
        self._elapsed_accum += self._scheduler.now() - self._run_started
        self._run_started = None
        self._set_state(PAUSED)

    def resume(self) -> None:
        if self._state != PAUSED:
            raise InvalidStateError("resume", self._state)
        self._encoder.resume()
        self._run_started = self._scheduler.now()
        self._compositor.start(self._scheduler, self._on_frame)
        self._set_state(RECORDING)

    def stop(self) -> RecordingSession:
        """Finish the recording and return the new session."""
        if self._state not in (RECORDING, PAUSED):
            raise InvalidStateError("stop", self._state)
        self._set_state(STOPPING)
        self._compositor.stop()
        if self._run_started is not None:
            self._elapsed_accum += self._scheduler.now() - self._run_started
            self._run_started = None
        overlay = self._compositor.state.overlay_position
        try:
            buffer = self._encoder.stop()
        except Exception as exc:
            logger.error("Recording stop failed: %s", exc)
            self._teardown(abort_encoder=True)
            self._set_state(IDLE)
            raise
        self._teardown(abort_encoder=False)

        session_id = make_session_id(taken=self._session_ids)
        self._session_ids.add(session_id)
        session = RecordingSession(
            id=session_id,
            created_at=now_iso(),
            duration_seconds=int(math.floor(self._elapsed_accum + 0.5)),
            layout=self._layout.kind,
            quality=self._quality,
            video_buffer=buffer,
            metadata={"overlayPosition": overlay.to_dict()},
        )
        self._set_state(IDLE)
        logger.info("Recording finished: %s (%ds, %d bytes)",
                    session.id, session.duration_seconds, len(buffer))
        self.recording_finished.emit(session)
        return session

    def update_overlay_position(self, x: float, y: float) -> OverlayPosition:
        """Move the camera overlay; takes effect on the next tick."""
        if self._state not in (RECORDING, PAUSED):
            raise InvalidStateError("move the overlay", self._state)
        return self._compositor.state.set_overlay_position(x, y)

    # ── internal ────────────────────────────────────────────────────

    def _on_frame(self, frame) -> None:
        self._encoder.write_frame(frame)
        if (self._settings.source_loss_policy == SOURCE_LOSS_STOP
                and self._screen is not None and self._screen.is_ended()):
            logger.warning("Screen source ended, stopping recording")
            self.source_lost.emit(SCREEN)
            self.stop()

    def _teardown(self, abort_encoder: bool) -> None:
        if abort_encoder and self._encoder is not None:
            self._encoder.abort()
        self._devices.release_all()
        if self._mixer is not None:
            self._mixer.close()
        self._mixer = None
        self._encoder = None
        self._compositor = None
        self._screen = None
