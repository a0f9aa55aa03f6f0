"""
Hub: process-wide registry of live websocket sessions.

Dispatch is best-effort. A session whose outbound buffer is full skips the
payload and everyone else still gets it; callers are never blocked by a slow
client. The table lock is only held for dictionary work and non-blocking
enqueues, so it is safe to call from the event loop and from threadpool
handlers alike.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Dict, List

from session import Session

logger = logging.getLogger(__name__)


class Hub:
    def __init__(self) -> None:
        self._sessions: Dict[int, Session] = {}
        # exclusive rather than readers-writer: held only for dict scans and
        # non-blocking enqueues, never across socket I/O or the database
        self._lock = threading.RLock()
        self._ids = itertools.count(1)

    def next_session_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def register(self, session: Session) -> None:
        with self._lock:
            previous = self._sessions.get(session.session_id)
            self._sessions[session.session_id] = session
            if previous is not None and previous is not session:
                previous.outbound.close()
        logger.info("session %d registered for user %d", session.session_id, session.user_id)

    def unregister(self, session: Session) -> bool:
        """Drop the session and close its buffer. Returns False if it was not registered."""
        with self._lock:
            if self._sessions.get(session.session_id) is not session:
                return False
            del self._sessions[session.session_id]
            session.outbound.close()
        logger.info("session %d unregistered", session.session_id)
        return True

    def send_to_user(self, user_id: int, payload: str) -> int:
        """Queue payload on every session of user_id. Returns how many accepted it."""
        with self._lock:
            targets = [s for s in self._sessions.values() if s.user_id == user_id]
            return self._dispatch(targets, payload)

    def send_to_session(self, session_id: int, payload: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            return self._dispatch([session], payload) == 1

    def broadcast_all(self, payload: str) -> int:
        with self._lock:
            return self._dispatch(list(self._sessions.values()), payload)

    def connected_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def connected_users(self) -> int:
        with self._lock:
            return len({s.user_id for s in self._sessions.values()})

    def _dispatch(self, targets: List[Session], payload: str) -> int:
        delivered = 0
        for session in targets:
            if session.outbound.try_put(payload):
                delivered += 1
            else:
                session.dropped += 1
                logger.warning("session %d buffer full, skipping payload", session.session_id)
        return delivered
