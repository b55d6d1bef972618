from __future__ import annotations

from vibe.models import Session
from vibe.zellij import session_name_for_branch


class SessionsState:
    """Latest zellij session list, with activity carried across polls.

    ``zellij list-sessions`` knows nothing about Claude activity, so every
    fresh poll must inherit the classification of the sessions it replaces
    before anything reads ``activity_state``.
    """

    def __init__(self) -> None:
        self.sessions: list[Session] = []
        self.error: str | None = None

    def set_sessions(self, new_sessions: list[Session]) -> None:
        previous = {s.name: s for s in self.sessions}
        for session in new_sessions:
            existing = previous.get(session.name)
            if existing is not None:
                session.activity_state = existing.activity_state
                session.context_percentage = existing.context_percentage
        self.sessions = new_sessions
        self.error = None

    def set_error(self, message: str) -> None:
        self.error = message

    def session_for_branch(self, branch: str) -> Session | None:
        name = session_name_for_branch(branch)
        for session in self.sessions:
            if session.name == name:
                return session
        return None
