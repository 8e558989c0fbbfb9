"""Registry of live sessions."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from termsessions.errors import DuplicateSession, SessionNotFound
from termsessions.session.models import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Registry of live sessions keyed by caller-chosen id.

    Ids are unique at any instant.  Once a session is removed its id may be
    reused by a new session.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        """Register a session; fails without mutating state on a duplicate id."""
        if session.id in self._sessions:
            raise DuplicateSession(session.id)
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Session:
        """Get a session by id or raise :class:`SessionNotFound`."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def find(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def remove(self, session: Session) -> bool:
        """Remove ``session`` if it is still the one registered under its id."""
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            logger.debug("Session %s removed from registry", session.id)
            return True
        return False

    def ids(self) -> list[str]:
        return list(self._sessions.keys())

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
