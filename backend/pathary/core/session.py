"""Server-side session storage.

The browser only holds an opaque session id; the data (the logged in user id,
the digest of the auth token it was issued with, a pending TOTP secret, the
CSRF token) stays on the server. Sessions idle for longer than the configured
timeout are evicted.
"""

from __future__ import annotations

import secrets
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from pathary.config import settings

# Seconds between sweeps of idle sessions
_SWEEP_INTERVAL = 60


class InMemorySessionStore:
    """Process-local session data keyed by session id"""

    def __init__(
        self,
        idle_timeout: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._idle_timeout = idle_timeout if idle_timeout is not None else settings.SESSION_IDLE_TIMEOUT_SECONDS
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _is_idle(self, last_seen: float, now: float) -> bool:
        return now - last_seen >= self._idle_timeout

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < _SWEEP_INTERVAL:
            return
        self._last_sweep = now
        for session_id in [sid for sid, (seen, _) in self._sessions.items() if self._is_idle(seen, now)]:
            del self._sessions[session_id]

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return None
            last_seen, data = entry
            if self._is_idle(last_seen, now):
                del self._sessions[session_id]
                return None
            self._sessions[session_id] = (now, data)
            return dict(data)

    def save(self, session_id: str, data: Dict[str, Any]) -> None:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._sessions[session_id] = (now, dict(data))

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()


session_store = InMemorySessionStore()


class SessionWrapper:
    """
    One request's view of its session

    Nothing reaches the store until the session is started, so a request that
    never gets a session cookie back never leaves an entry behind.
    """

    def __init__(self, store: InMemorySessionStore, session_id: Optional[str] = None) -> None:
        self._store = store
        self._data: Dict[str, Any] = {}
        self._session_id: Optional[str] = None
        self.id_changed = False

        if session_id:
            data = store.load(session_id)
            if data is not None:
                self._session_id = session_id
                self._data = data

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_started(self) -> bool:
        return self._session_id is not None

    def start(self) -> None:
        if self._session_id is None:
            self._session_id = secrets.token_urlsafe(32)
            self._data = {}
            self.id_changed = True
            self._store.save(self._session_id, self._data)

    def find(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.start()
        self._data[key] = value
        self._store.save(self._session_id, self._data)

    def unset(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            if self._session_id is not None:
                self._store.save(self._session_id, self._data)

    def destroy(self) -> None:
        if self._session_id is not None:
            self._store.delete(self._session_id)
        self._session_id = None
        self._data = {}
        self.id_changed = True

    def regenerate_id(self) -> None:
        """Move the session data to a fresh id (session fixation defence)."""
        old_id = self._session_id
        self._session_id = secrets.token_urlsafe(32)
        self._store.save(self._session_id, self._data)
        if old_id is not None:
            self._store.delete(old_id)
        self.id_changed = True
