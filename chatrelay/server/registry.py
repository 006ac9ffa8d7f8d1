import logging
import uuid
from typing import Any, Dict, List, Optional

from .models import Session


class SessionRegistry:
    """
    Maps each live connection to the username it declared.

    Session ids are random UUIDs, independent of the username, so two
    connections may share a username and still be tracked separately.
    Insertion order is preserved, which keeps the roster in join order.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._logger = logging.getLogger("chat_relay_app")

    def register(self, connection: Any, username: str) -> str:
        session_id = str(uuid.uuid4())
        while session_id in self._sessions:
            session_id = str(uuid.uuid4())
        session = Session(session_id=session_id, connection=connection, username=username)
        self._sessions[session_id] = session
        self._logger.debug(
            "Registered session",
            extra={"session_id": session_id, "username": username},
        )
        return session_id

    def deregister(self, session_id: str) -> Optional[Session]:
        """Remove a session. Unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            self._logger.debug(
                "Deregistered session",
                extra={"session_id": session_id, "username": session.username},
            )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def list_usernames(self) -> List[str]:
        return [session.username for session in self._sessions.values()]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
