"""
Ephemeral in-memory stores for the OAuth proxy.

Pending authorizations (keyed by CSRF state), proxy authorization codes and
dynamic client registrations all live in process memory with a fixed TTL.
Entries are consumed with take_once() and expired entries are swept lazily
by the endpoints that write to each store.
"""

import logging
import time
from threading import RLock
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 10 * 60
CODE_TTL_SECONDS = 10 * 60
REGISTRATION_TTL_SECONDS = 24 * 60 * 60

T = TypeVar("T")


class EphemeralStore(Generic[T]):
    """
    Single-process TTL map with atomic get-and-delete.

    All operations hold an RLock, so take_once() hands a given key to at most
    one caller even when handlers run on worker threads.
    """

    def __init__(self, name: str, ttl_seconds: float, clock: Callable[[], float] = time.time):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be non-negative")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[T, float]] = {}
        self._lock = RLock()

    def put(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        """Store a value, replacing any previous entry under the same key."""
        if not key:
            raise ValueError(f"{self.name} key must be provided")
        ttl = self.ttl_seconds if ttl is None else ttl
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
        logger.debug(f"Stored {self.name} entry {_redact(key)} (ttl {ttl}s)")

    def take_once(self, key: Optional[str]) -> Optional[T]:
        """
        Remove and return the value for key.

        Returns None when the key is unknown, already consumed or expired. An
        expired entry is removed even though it is not returned.
        """
        if not key:
            return None
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            logger.debug(f"{self.name} entry {_redact(key)} not found")
            return None

        value, expires_at = entry
        if expires_at <= self._clock():
            logger.info(f"{self.name} entry {_redact(key)} expired before use")
            return None
        return value

    def sweep_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired {self.name} entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _redact(key: str) -> str:
    return f"{key[:8]}..." if len(key) > 8 else key


# Global store instances
_pending_authorizations: Optional[EphemeralStore] = None
_authorization_codes: Optional[EphemeralStore] = None
_client_registrations: Optional[EphemeralStore] = None


def get_pending_authorizations() -> EphemeralStore:
    """Store of PendingAuthorization records keyed by CSRF state."""
    global _pending_authorizations
    if _pending_authorizations is None:
        _pending_authorizations = EphemeralStore("oauth state", STATE_TTL_SECONDS)
    return _pending_authorizations


def get_authorization_codes() -> EphemeralStore:
    """Store of ProxyAuthorizationCode records keyed by proxy-minted code."""
    global _authorization_codes
    if _authorization_codes is None:
        _authorization_codes = EphemeralStore("authorization code", CODE_TTL_SECONDS)
    return _authorization_codes


def get_client_registrations() -> EphemeralStore:
    """Store of RegisteredClient records keyed by client id."""
    global _client_registrations
    if _client_registrations is None:
        _client_registrations = EphemeralStore("client registration", REGISTRATION_TTL_SECONDS)
    return _client_registrations


def reset_oauth_stores(clock: Optional[Callable[[], float]] = None) -> Dict[str, Any]:
    """
    Replace all stores with empty ones.

    Used by tests, optionally with a controllable clock.
    """
    global _pending_authorizations, _authorization_codes, _client_registrations
    clock = clock or time.time
    _pending_authorizations = EphemeralStore("oauth state", STATE_TTL_SECONDS, clock)
    _authorization_codes = EphemeralStore("authorization code", CODE_TTL_SECONDS, clock)
    _client_registrations = EphemeralStore("client registration", REGISTRATION_TTL_SECONDS, clock)
    return {
        "pending_authorizations": _pending_authorizations,
        "authorization_codes": _authorization_codes,
        "client_registrations": _client_registrations,
    }
