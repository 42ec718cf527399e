"""Session bundles — save / load a recording as a single ZIP file.

A bundle is a ZIP archive containing:
  - <id>.webm      — the encoded recording
  - metadata.json  — ``{id, created, duration, layout, quality}``

The metadata document is fixed-shape so other tools can read it; the
session's free-form ``metadata`` dict is not part of the bundle.
"""

import json
import logging
import zipfile

from .models import QualityConfig, RecordingSession

logger = logging.getLogger(__name__)

BUNDLE_EXT = ".zip"
_JSON_NAME = "metadata.json"


def video_member_name(session: RecordingSession) -> str:
    return f"{session.id}.{session.video_type}"


def save_bundle(output_path: str, session: RecordingSession) -> str:
    """Write *session* to a ZIP bundle.  Returns the final output path."""
    if not output_path.lower().endswith(BUNDLE_EXT):
        output_path += BUNDLE_EXT

    with zipfile.ZipFile(output_path, "w", zipfile.ZIP_STORED) as zf:
        zf.writestr(video_member_name(session), session.video_buffer)
        zf.writestr(_JSON_NAME, session.metadata_json())

    logger.info("Saved bundle %s (%d bytes of video)", output_path, len(session.video_buffer))
    return output_path


def load_bundle(input_path: str) -> RecordingSession:
    """Read a bundle written by :func:`save_bundle` back into a session."""
    if not zipfile.is_zipfile(input_path):
        raise ValueError(f"Not a valid bundle: {input_path}")

    with zipfile.ZipFile(input_path, "r") as zf:
        names = zf.namelist()
        if _JSON_NAME not in names:
            raise ValueError(f"Bundle missing {_JSON_NAME}")
        data = json.loads(zf.read(_JSON_NAME).decode("utf-8"))

        session_id = data["id"]
        video_name = next(
            (n for n in names if n != _JSON_NAME and n.rsplit(".", 1)[0] == session_id),
            None,
        )
        if video_name is None:
            raise ValueError(f"Bundle missing video for {session_id}")
        buffer = zf.read(video_name)

    video_type = video_name.rsplit(".", 1)[1] if "." in video_name else "webm"
    return RecordingSession(
        id=session_id,
        created_at=data["created"],
        duration_seconds=int(data["duration"]),
        layout=data["layout"],
        quality=QualityConfig.from_dict(data["quality"]),
        video_buffer=buffer,
        video_type=video_type,
    )
