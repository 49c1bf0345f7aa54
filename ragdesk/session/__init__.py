"""
Sessions: signed cookie ids, the session store, token refresh, idle sweep.
"""
from ragdesk.session.manager import CookieSettings, SessionManager
from ragdesk.session.signing import sign_session_id, verify_session_id
from ragdesk.session.store import MemorySessionStore, Session, SessionStore
from ragdesk.session.tokens import TokenGuard

__all__ = [
    "CookieSettings",
    "SessionManager",
    "Session",
    "SessionStore",
    "MemorySessionStore",
    "TokenGuard",
    "sign_session_id",
    "verify_session_id",
]
