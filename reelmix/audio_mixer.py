"""Audio mixer — sums every live input into one output track.

Inputs are any objects with a ``read()`` method returning the float32
samples captured since the previous call (shape ``(n,)`` or
``(n, channels)``).  The mix is a plain sum: no gain staging, ducking
or clipping protection, so loud inputs can exceed full scale.

Inputs run on their own device clocks.  When one input has delivered
fewer samples than another at read time, it is padded with silence, so
long recordings can drift between inputs (and against the video).
"""

import logging
from typing import List

import numpy as np

logger = logging.getLogger(__name__)

MIX_SAMPLE_RATE = 48000
MIX_CHANNELS = 2


def _to_channels(samples: np.ndarray, channels: int) -> np.ndarray:
    """Reshape *samples* to ``(n, channels)``, up-mixing mono by copying."""
    data = np.asarray(samples, dtype=np.float32)
    if data.ndim == 1:
        data = data[:, np.newaxis]
    have = data.shape[1]
    if have == channels:
        return data
    if have == 1:
        return np.repeat(data, channels, axis=1)
    if have > channels:
        return data[:, :channels]
    # Fewer channels than the mix: repeat the last one
    pad = np.repeat(data[:, -1:], channels - have, axis=1)
    return np.concatenate([data, pad], axis=1)


class MixedAudioTrack:
    """The mixer's single output track."""

    def __init__(self, mixer: "AudioMixer") -> None:
        self._mixer = mixer

    @property
    def sample_rate(self) -> int:
        return self._mixer.sample_rate

    @property
    def channels(self) -> int:
        return self._mixer.channels

    def read(self) -> np.ndarray:
        """Pull every input and return their sum, shape ``(n, channels)``."""
        return self._mixer._mix()

    def discard(self) -> None:
        """Drop whatever the inputs captured since the last read."""
        self._mixer._mix()


class AudioMixer:
    """Shared mixing destination for one recording attempt."""

    def __init__(self, sample_rate: int = MIX_SAMPLE_RATE,
                 channels: int = MIX_CHANNELS) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._inputs: List[object] = []
        self._track = MixedAudioTrack(self)
        self._closed = False

    @property
    def inputs(self) -> list:
        return list(self._inputs)

    @property
    def closed(self) -> bool:
        return self._closed

    def connect_input(self, signal) -> None:
        """Route *signal* into the mix."""
        if self._closed:
            raise RuntimeError("AudioMixer is closed")
        self._inputs.append(signal)
        logger.info("Mixer input connected: %s", getattr(signal, "kind", type(signal).__name__))

    def get_output_track(self) -> MixedAudioTrack:
        return self._track

    def close(self) -> None:
        """Disconnect all inputs.  The inputs themselves are not closed."""
        self._inputs.clear()
        self._closed = True

    def _mix(self) -> np.ndarray:
        pulled = [_to_channels(sig.read(), self.channels) for sig in self._inputs]
        length = max((p.shape[0] for p in pulled), default=0)
        out = np.zeros((length, self.channels), dtype=np.float32)
        for p in pulled:
            out[:p.shape[0]] += p
        return out
