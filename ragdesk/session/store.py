"""
Session records and where they live.

The store is a plain key-value map of session id -> Session. The in-memory
implementation is what ships; anything with get/set/delete can replace it
(a networked store is needed once there is more than one server process).
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One authenticated browser."""
    user_id: str
    user_email: str
    display_name: str
    department_code: str
    access_token: str
    token_expires_at: float
    department_name: str = ""
    department_codes: list[str] = field(default_factory=list)
    refresh_token: str | None = None
    created_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.department_codes and self.department_code:
            self.department_codes = [self.department_code]

    def public_profile(self) -> dict:
        """What the browser is allowed to see about itself."""
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "userEmail": self.user_email,
            "departmentCode": self.department_code,
            "departmentName": self.department_name,
            "departmentCodes": list(self.department_codes),
        }


class SessionStore(ABC):
    """Abstract session store."""

    @abstractmethod
    def get(self, session_id: str) -> Session | None:
        ...

    @abstractmethod
    def set(self, session_id: str, session: Session) -> None:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    def exists(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def sweep(self, idle_timeout: float) -> int:
        """Drop sessions idle longer than idle_timeout seconds. Returns count."""
        ...


class MemorySessionStore(SessionStore):
    """Dict-backed session store."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def get(self, session_id):
        return self._sessions.get(session_id)

    def set(self, session_id, session):
        self._sessions[session_id] = session

    def delete(self, session_id):
        self._sessions.pop(session_id, None)

    def exists(self, session_id):
        return session_id in self._sessions

    def sweep(self, idle_timeout):
        now = time.time()
        stale = [
            sid for sid, s in self._sessions.items()
            if now - s.last_accessed_at > idle_timeout
        ]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)
