from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List

from .accounts import User
from .errors import AlreadyAuthenticated, AuthError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Session:
    connection_id: str
    username: str | None = None
    is_admin: bool = False
    current_room: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.username is not None


class SessionManager:
    """Tracks live connections and the identity bound to each of them.

    Every connection is either anonymous or bound to exactly one username and
    is in at most one room. With ``single_session`` enabled a username is bound
    to at most one connection; the caller is expected to evict older
    connections through :meth:`force_disconnect` before binding a new one.
    """

    def __init__(self, *, single_session: bool = True) -> None:
        self.single_session = single_session
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def attach(self, connection_id: str) -> Session:
        with self._lock:
            if connection_id in self._sessions:
                raise ValidationError("connection already attached")
            session = Session(connection_id=connection_id)
            self._sessions[connection_id] = session
            return session

    def get(self, connection_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(connection_id)

    def authenticate_session(self, connection_id: str, user: User) -> Session:
        with self._lock:
            session = self._sessions.get(connection_id)
            if session is None:
                raise AuthError("Connection is not attached")
            if session.username is not None:
                raise AlreadyAuthenticated("Already signed in on this connection")
            session.username = user.username
            session.is_admin = user.is_admin
            return session

    def sign_out(self, connection_id: str) -> Session | None:
        """Return an authenticated connection to the anonymous state."""

        with self._lock:
            session = self._sessions.get(connection_id)
            if session is None or session.username is None:
                return None
            previous = Session(
                connection_id=connection_id,
                username=session.username,
                is_admin=session.is_admin,
                current_room=session.current_room,
            )
            session.username = None
            session.is_admin = False
            session.current_room = None
            return previous

    def detach(self, connection_id: str) -> Session | None:
        """Forget ``connection_id``; safe to call any number of times."""

        with self._lock:
            return self._sessions.pop(connection_id, None)

    def force_disconnect(self, username: str, reason: str) -> List[Session]:
        """Detach every session bound to ``username`` and return them.

        The caller delivers ``reason`` to each returned connection; the
        transport closes the socket once that notification is written.
        """

        with self._lock:
            doomed = [s for s in self._sessions.values() if s.username == username]
            for session in doomed:
                self._sessions.pop(session.connection_id, None)
        for session in doomed:
            logger.info("force disconnect %s (%s): %s", session.connection_id, username, reason)
        return doomed

    def set_current_room(self, connection_id: str, room_name: str | None) -> None:
        with self._lock:
            session = self._sessions.get(connection_id)
            if session is not None:
                session.current_room = room_name

    def current_room_of(self, connection_id: str) -> str | None:
        with self._lock:
            session = self._sessions.get(connection_id)
            return session.current_room if session is not None else None

    def connections_of(self, username: str) -> List[str]:
        with self._lock:
            return [cid for cid, s in self._sessions.items() if s.username == username]

    def authenticated_connections(self) -> List[str]:
        with self._lock:
            return [cid for cid, s in self._sessions.items() if s.username is not None]

    def admin_connections(self) -> List[str]:
        with self._lock:
            return [cid for cid, s in self._sessions.items() if s.is_admin]
