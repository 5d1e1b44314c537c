from __future__ import annotations

from typing import Dict, List, Optional

from .errors import AlreadyExists, SessionNotFound
from .models import Session


class SessionStore:
    """Keyed in-memory container of sessions.

    Values go in and come out as deep copies, so a caller holding a Session
    can never change stored state except through ``save``.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def create(self, session: Session) -> Session:
        if session.id in self._sessions:
            raise AlreadyExists(f"Session {session.id} already exists")
        self._sessions[session.id] = session.model_copy(deep=True)
        return session.model_copy(deep=True)

    def get(self, session_id: str) -> Optional[Session]:
        s = self._sessions.get(session_id)
        return s.model_copy(deep=True) if s else None

    def require(self, session_id: str) -> Session:
        s = self.get(session_id)
        if s is None:
            raise SessionNotFound()
        return s

    def save(self, session: Session) -> None:
        if session.id not in self._sessions:
            raise SessionNotFound()
        self._sessions[session.id] = session.model_copy(deep=True)

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def list(self) -> List[Session]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
