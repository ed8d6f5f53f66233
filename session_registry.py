import logging
import threading

from picker_types import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Capture preferences per session handle.

    All access goes through one lock, held only for the dict operation.
    Never await or do I/O while holding it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions = {}

    def create(self, handle: str) -> None:
        # A repeated create for the same handle just resets it
        with self._lock:
            self._sessions[handle] = Session()

    def update(self, handle: str, options) -> bool:
        """Overwrite the session's preferences with already-defaulted options.

        Returns False (and logs) when the handle is unknown.
        """
        with self._lock:
            session = self._sessions.get(handle)
            if session is not None:
                session.source_types = options.source_types
                session.cursor_mode = options.cursor_mode
                session.persist_mode = options.persist_mode
                session.restore_token = options.restore_token
        if session is None:
            logger.warning(f"SelectSources: session not found: {handle}")
            return False
        return True

    def get(self, handle: str):
        with self._lock:
            session = self._sessions.get(handle)
            return session.copy() if session is not None else None

    def __contains__(self, handle):
        with self._lock:
            return handle in self._sessions

    def __len__(self):
        with self._lock:
            return len(self._sessions)
