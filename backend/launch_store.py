"""
Redirect-durable launch state.

Each browser session (identified by an opaque cookie value) owns one
MemoryLaunchStore. It is the only state that survives the round trip to the
authorization server: everything the callback needs is written here before
redirecting out.
"""
import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Protocol

import config

logger = logging.getLogger(__name__)

# In-flight handshake keys, cleared after use
SMART_ISS = "smart_iss"
SMART_STATE = "smart_state"
SMART_CODE_VERIFIER = "smart_code_verifier"
SMART_STARTED_AT = "smart_started_at"
SMART_EXCHANGE_CODE = "smart_exchange_code"

# Authenticated session keys
SMART_PATIENT = "smart_patient"
SMART_ACCESS_TOKEN = "smart_access_token"
SMART_BASE_URL = "smart_base_url"

HANDSHAKE_KEYS = (SMART_ISS, SMART_STATE, SMART_CODE_VERIFIER, SMART_STARTED_AT, SMART_EXCHANGE_CODE)
SESSION_KEYS = (SMART_ACCESS_TOKEN, SMART_PATIENT, SMART_BASE_URL)


class LaunchStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def claim(self, key: str, value: str) -> bool: ...

    def clear_handshake(self, keep_issuer: bool = False) -> None: ...

    def snapshot(self) -> Dict[str, str]: ...

    def restore(self, values: Dict[str, str]) -> None: ...

    def has_session(self) -> bool: ...


class MemoryLaunchStore:
    """Key/value store for one browser session. Safe to share between request threads."""

    def __init__(self, values: Optional[Dict[str, str]] = None, clock: Callable[[], float] = time.time):
        self._values: Dict[str, str] = dict(values or {})
        self._lock = threading.Lock()
        self._clock = clock
        self.touched_at = clock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value
            self.touched_at = self._clock()

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def claim(self, key: str, value: str) -> bool:
        """Set key to value unless it already holds value. Returns False if it did."""
        with self._lock:
            if self._values.get(key) == value:
                return False
            self._values[key] = value
            self.touched_at = self._clock()
            return True

    def clear_handshake(self, keep_issuer: bool = False) -> None:
        with self._lock:
            for key in HANDSHAKE_KEYS:
                if keep_issuer and key == SMART_ISS:
                    continue
                self._values.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._values)

    def restore(self, values: Dict[str, str]) -> None:
        """Put the handshake keys back as they were in a snapshot. Session keys are left alone."""
        with self._lock:
            for key in HANDSHAKE_KEYS:
                if key in values:
                    self._values[key] = values[key]
                else:
                    self._values.pop(key, None)

    def has_session(self) -> bool:
        with self._lock:
            return all(self._values.get(key) for key in SESSION_KEYS)

    def is_stale(self, ttl: int, now: float) -> bool:
        """Unauthenticated and untouched for longer than ttl seconds."""
        return ttl > 0 and not self.has_session() and now - self.touched_at > ttl


# session_id -> MemoryLaunchStore (in-process; replace with a shared store when running several workers)
SESSIONS: Dict[str, MemoryLaunchStore] = {}
_sessions_lock = threading.Lock()


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def evict_stale(ttl: Optional[int] = None, now: Optional[float] = None) -> int:
    """Drop sessions whose handshake was abandoned more than ttl seconds ago."""
    ttl = config.LAUNCH_STATE_TTL_SECONDS if ttl is None else ttl
    now = time.time() if now is None else now
    with _sessions_lock:
        stale = [session_id for session_id, store in SESSIONS.items() if store.is_stale(ttl, now)]
        for session_id in stale:
            del SESSIONS[session_id]
    if stale:
        logger.info(f"Evicted {len(stale)} abandoned launch session(s)")
    return len(stale)


def open_store(session_id: str) -> MemoryLaunchStore:
    evict_stale()
    with _sessions_lock:
        store = SESSIONS.get(session_id)
        if store is None:
            store = MemoryLaunchStore()
            SESSIONS[session_id] = store
        return store


def find_store(session_id: Optional[str]) -> Optional[MemoryLaunchStore]:
    if not session_id:
        return None
    with _sessions_lock:
        store = SESSIONS.get(session_id)
        if store is not None and store.is_stale(config.LAUNCH_STATE_TTL_SECONDS, time.time()):
            del SESSIONS[session_id]
            return None
        return store


def drop_session(session_id: Optional[str]) -> bool:
    if not session_id:
        return False
    with _sessions_lock:
        removed = SESSIONS.pop(session_id, None) is not None
    if removed:
        logger.info("Launch session discarded")
    return removed
