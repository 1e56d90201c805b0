"""
Session/transport registry for the HTTP transports.

Maps server-minted session ids to the live transport of one client connection,
for both the legacy SSE transport and Streamable HTTP. Follow-up messages are
routed through here, and every registered transport is closed on shutdown.
"""

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class TransportFamily(str, enum.Enum):
    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"


class SessionRoutingError(Exception):
    """Base class for session lookup failures."""

    status_code = 400

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        self.message = message
        super().__init__(message)


class SessionNotFoundError(SessionRoutingError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(session_id, "Session not found")


class TransportMismatchError(SessionRoutingError):
    status_code = 400

    def __init__(self, session_id: str, expected: TransportFamily, actual: TransportFamily):
        self.expected = expected
        self.actual = actual
        super().__init__(session_id, "Session exists but uses a different transport protocol")


@dataclass
class SessionEntry:
    session_id: str
    family: TransportFamily
    transport: Any
    user_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)


class SessionRegistry:
    """
    Process-wide map of session id to transport.

    Transports must provide an async close() used on shutdown.
    """

    def __init__(self):
        self._sessions: Dict[str, SessionEntry] = {}
        self._lock = RLock()

    @staticmethod
    def new_session_id() -> str:
        return uuid.uuid4().hex

    def register(self, session_id: str, family: TransportFamily, transport: Any, user_id: Optional[str] = None) -> SessionEntry:
        entry = SessionEntry(session_id=session_id, family=family, transport=transport, user_id=user_id)
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} is already registered")
            self._sessions[session_id] = entry
            count = len(self._sessions)
        logger.info(f"Session registered: {session_id} ({family.value}), {count} active")
        return entry

    def get(self, session_id: str, family: TransportFamily) -> Any:
        """
        Look up the transport for a session of the expected family.

        Raises:
            SessionNotFoundError: Unknown session id
            TransportMismatchError: Session belongs to the other transport family
        """
        with self._lock:
            entry = self._sessions.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        if entry.family is not family:
            logger.warning(
                f"Session {session_id} is {entry.family.value} but was addressed as {family.value}"
            )
            raise TransportMismatchError(session_id, family, entry.family)
        return entry.transport

    def remove(self, session_id: str, transport: Any = None) -> Optional[SessionEntry]:
        """
        Remove a session. When transport is given, only remove it if it is still
        the one registered under that id.
        """
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None or (transport is not None and entry.transport is not transport):
                return None
            del self._sessions[session_id]
            count = len(self._sessions)
        logger.info(f"Session removed: {session_id} ({entry.family.value}), {count} active")
        return entry

    def list_sessions(self) -> List[SessionEntry]:
        with self._lock:
            return list(self._sessions.values())

    async def close_all(self) -> int:
        """Close and drop every registered transport. Returns the number closed."""
        with self._lock:
            entries = list(self._sessions.values())
            self._sessions.clear()

        for entry in entries:
            try:
                await entry.transport.close()
            except Exception as e:
                logger.error(f"Error closing session {entry.session_id}: {e}", exc_info=True)
        if entries:
            logger.info(f"Closed {len(entries)} sessions on shutdown")
        return len(entries)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# Global registry instance
_session_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    """Get the global session registry shared by both transport families."""
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry()
    return _session_registry


def reset_session_registry() -> SessionRegistry:
    """Replace the global registry with an empty one (used by tests)."""
    global _session_registry
    _session_registry = SessionRegistry()
    return _session_registry
