"""
Access-token freshness guard.

Refresh happens eagerly at the start of a protected request, before any
upstream call, never in response to a downstream 401.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace

from ragdesk.errors import AppError, ErrorCode
from ragdesk.session.store import Session, SessionStore

logger = logging.getLogger(__name__)


class TokenGuard:
    """
    Keeps a session's access token usable.

    identity must provide `async refresh_token(refresh_token) -> TokenSet`
    (see ragdesk.auth.identity).
    """

    def __init__(self, store: SessionStore, identity, refresh_buffer: float = 300):
        self.store = store
        self.identity = identity
        self.refresh_buffer = refresh_buffer

    def needs_refresh(self, session: Session, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now + self.refresh_buffer >= session.token_expires_at

    async def ensure_valid_token(self, session_id: str, session: Session) -> Session:
        if not self.needs_refresh(session):
            return session

        if not session.refresh_token:
            raise AppError(
                ErrorCode.TOKEN_EXPIRED, "No refresh token available", 401
            )

        try:
            tokens = await self.identity.refresh_token(session.refresh_token)
        except Exception as e:
            # Fail closed: a session we cannot refresh is forced back to login
            self.store.delete(session_id)
            logger.warning("Token refresh failed for %s: %s", session.user_email, e)
            if isinstance(e, AppError):
                raise
            raise AppError(
                ErrorCode.TOKEN_EXPIRED, f"Token refresh failed: {e}", 401
            ) from e

        now = time.time()
        updated = replace(
            session,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or session.refresh_token,
            token_expires_at=now + tokens.expires_in,
            last_accessed_at=now,
        )
        self.store.set(session_id, updated)
        logger.info("Access token refreshed for %s", session.user_email)
        return updated
