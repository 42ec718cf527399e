"""Exception taxonomy for the recording engine.

Acquisition and export failures are distinct classes so a host UI can
tell "the camera was denied" apart from "ffmpeg would not start" and
show an actionable message.  Segment edits never raise; they return
``False`` when rejected.
"""


class ReelmixError(Exception):
    """Base class for all engine errors."""


class AcquisitionError(ReelmixError):
    """A capture device could not be opened.

    *reason* is one of ``"denied"`` (the user or OS refused access),
    ``"blocked"`` (a policy forbids the device) or ``"unavailable"``
    (the device is missing or failed to open).
    """

    DENIED = "denied"
    BLOCKED = "blocked"
    UNAVAILABLE = "unavailable"

    def __init__(self, kind: str, device_ref: str = "default",
                 reason: str = UNAVAILABLE, detail: str = "") -> None:
        self.kind = kind
        self.device_ref = device_ref
        self.reason = reason
        self.detail = detail
        msg = f"Cannot acquire {kind} ({device_ref}): {reason}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class EncoderError(ReelmixError):
    """The stream encoder failed to initialise."""


class InvalidStateError(ReelmixError):
    """An operation was requested in a state that does not allow it."""

    def __init__(self, operation: str, state: str) -> None:
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while {state}")


class ExportError(ReelmixError):
    """The export renderer could not produce an output."""


class ExportTimeoutError(ExportError):
    """A source seek never completed within the allowed wait."""

    def __init__(self, source_time: float, timeout: float) -> None:
        self.source_time = source_time
        self.timeout = timeout
        super().__init__(
            f"Seek to {source_time:.3f}s did not complete within {timeout:.1f}s"
        )
