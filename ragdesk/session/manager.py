"""
Session lifecycle: create on login, resolve on every request, destroy on logout.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace

from starlette.requests import Request
from starlette.responses import Response

from ragdesk.errors import AppError, ErrorCode
from ragdesk.session.signing import generate_session_id, sign_session_id, verify_session_id
from ragdesk.session.store import Session, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class CookieSettings:
    name: str = "session"
    secure: bool = True
    http_only: bool = True
    same_site: str = "lax"
    domain: str | None = None

    @classmethod
    def from_config(cls, cookie_cfg: dict) -> "CookieSettings":
        return cls(
            name=cookie_cfg.get("name", "session"),
            secure=cookie_cfg.get("secure", True),
            http_only=cookie_cfg.get("http_only", True),
            same_site=cookie_cfg.get("same_site", "lax"),
            domain=cookie_cfg.get("domain") or None,
        )


class SessionManager:
    """Signs, resolves and expires sessions held in a SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        secret: str,
        max_age: float = 86400,
        cookie: CookieSettings | None = None,
    ):
        self.store = store
        self.secret = secret
        self.max_age = max_age
        self.cookie = cookie or CookieSettings()

    @classmethod
    def from_config(cls, cfg: dict, store: SessionStore) -> "SessionManager":
        s_cfg = cfg.get("session", {})
        return cls(
            store=store,
            secret=s_cfg.get("secret", ""),
            max_age=s_cfg.get("max_age", 86400),
            cookie=CookieSettings.from_config(s_cfg.get("cookie", {})),
        )

    def create(self, **fields) -> tuple[str, str]:
        """Store a new session. Returns (session id, signed cookie value)."""
        session_id = generate_session_id()
        now = time.time()
        session = Session(created_at=now, last_accessed_at=now, **fields)
        self.store.set(session_id, session)
        logger.info("Session created for %s", session.user_email)
        return session_id, sign_session_id(session_id, self.secret)

    def resolve(self, signed: str | None) -> tuple[str, Session] | None:
        """
        Verify the cookie value and load its session.

        A session idle past max_age is deleted on the spot and treated as
        absent. A live one gets last_accessed_at bumped.
        """
        if not signed:
            return None
        session_id = verify_session_id(signed, self.secret)
        if session_id is None:
            logger.debug("Rejected session cookie with bad signature")
            return None

        session = self.store.get(session_id)
        if session is None:
            return None

        now = time.time()
        if now - session.last_accessed_at > self.max_age:
            logger.info("Session for %s expired, removing", session.user_email)
            self.store.delete(session_id)
            return None

        session.last_accessed_at = now
        self.store.set(session_id, session)
        return session_id, session

    def resolve_request(self, request: Request) -> tuple[str, Session] | None:
        return self.resolve(request.cookies.get(self.cookie.name))

    def update(self, session_id: str, **changes) -> Session:
        session = self.store.get(session_id)
        if session is None:
            raise AppError(ErrorCode.INVALID_SESSION, "Session not found", 401)
        updated = replace(session, last_accessed_at=time.time(), **changes)
        self.store.set(session_id, updated)
        return updated

    def destroy(self, signed: str | None) -> bool:
        session_id = verify_session_id(signed or "", self.secret)
        if session_id is None:
            return False
        self.store.delete(session_id)
        return True

    def set_cookie(self, response: Response, signed: str):
        response.set_cookie(
            key=self.cookie.name,
            value=signed,
            max_age=int(self.max_age),
            path="/",
            domain=self.cookie.domain,
            secure=self.cookie.secure,
            httponly=self.cookie.http_only,
            samesite=self.cookie.same_site,
        )

    def clear_cookie(self, response: Response):
        response.delete_cookie(
            key=self.cookie.name,
            path="/",
            domain=self.cookie.domain,
            secure=self.cookie.secure,
            httponly=self.cookie.http_only,
            samesite=self.cookie.same_site,
        )
