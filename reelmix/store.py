"""Record store — where finished sessions are kept.

:class:`RecordStore` is the interface the recorder's host and the
exporter talk to; :class:`MemoryRecordStore` keeps sessions in a dict
for the lifetime of the process.  Durable stores implement the same
five methods.
"""

import logging
from typing import Dict, List, Optional

from .models import RecordingSession

logger = logging.getLogger(__name__)


class RecordStore:
    """Interface for session persistence."""

    def save(self, session: RecordingSession) -> None:
        raise NotImplementedError

    def get_all(self) -> List[RecordingSession]:
        raise NotImplementedError

    def get(self, session_id: str) -> Optional[RecordingSession]:
        raise NotImplementedError

    def delete(self, session_id: str) -> bool:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryRecordStore(RecordStore):
    """In-process store; ``get_all`` lists newest first."""

    def __init__(self) -> None:
        self._sessions: Dict[str, RecordingSession] = {}

    def save(self, session: RecordingSession) -> None:
        """Insert or replace by id."""
        if session.id in self._sessions:
            logger.info("Replacing stored session %s", session.id)
        self._sessions[session.id] = session

    def get_all(self) -> List[RecordingSession]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at, reverse=True)

    def get(self, session_id: str) -> Optional[RecordingSession]:
        return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
