"""
Token store holding the active cloud session of a client.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..shared.logging import get_logger, set_user_context


@dataclass(frozen=True)
class Session:
    """An authenticated cloud session."""
    username: str
    access_token: str
    valid_from: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


SessionListener = Callable[[Optional[Session]], None]


class TokenStore:
    """Source of truth for "is a session active" for one client.

    Readers load a single reference to an immutable ``Session`` and never
    take the lock; writers are serialized so ``version`` and the session
    always change together.
    """

    def __init__(self):
        self.logger = get_logger("spark_cloud.auth.session")
        self._lock = threading.Lock()
        self._session: Optional[Session] = None
        self._version = 0
        self._listeners: List[SessionListener] = []

    @property
    def version(self) -> int:
        """Incremented on every set/clear."""
        return self._version

    @property
    def access_token(self) -> Optional[str]:
        session = self._session
        return session.access_token if session else None

    @property
    def username(self) -> Optional[str]:
        session = self._session
        return session.username if session else None

    @property
    def is_active(self) -> bool:
        return self._session is not None

    def current_session(self) -> Optional[Session]:
        """Get the active session, None when logged out."""
        return self._session

    def set_session(self, session: Session):
        """Replace the active session (login / signup)."""
        with self._lock:
            self._session = session
            self._version += 1
            version = self._version

        set_user_context(session.username)
        self.logger.info("Session established", username=session.username, version=version)
        self._notify(session)

    def clear_session(self):
        """Drop the active session (logout). Clearing an empty store is a no-op."""
        with self._lock:
            if self._session is None:
                return
            username = self._session.username
            self._session = None
            self._version += 1
            version = self._version

        set_user_context(None)
        self.logger.info("Session cleared", username=username, version=version)
        self._notify(None)

    def add_listener(self, listener: SessionListener):
        """Call ``listener`` with the new session (or None) after each change."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, session: Optional[Session]):
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(session)
            except Exception as e:
                self.logger.error("Session listener failed", error=str(e))
