"""
Identity provider client (Microsoft Entra ID, OAuth2 authorization-code flow).

Only what the app needs:
  - authorization_url()   where to send the browser to sign in
  - exchange_token(code)  authorization code -> tokens
  - refresh_token(rt)     refresh token -> fresh tokens
  - logout_url()          where to send the browser after local logout
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from ragdesk.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["openid", "profile", "offline_access", "User.Read", "GroupMember.Read.All"]


@dataclass
class TokenSet:
    access_token: str
    expires_in: int = 3600
    refresh_token: str | None = None
    id_token: str | None = None


class EntraIdentityProvider:

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        authority: str = "https://login.microsoftonline.com",
        post_logout_redirect_uri: str = "",
        scopes: list[str] | None = None,
        timeout: float = 15,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.authority = authority.rstrip("/")
        self.post_logout_redirect_uri = post_logout_redirect_uri
        self.scopes = scopes or DEFAULT_SCOPES
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, cfg: dict) -> "EntraIdentityProvider":
        i_cfg = cfg.get("identity", {})
        return cls(
            tenant_id=i_cfg.get("tenant_id", ""),
            client_id=i_cfg.get("client_id", ""),
            client_secret=i_cfg.get("client_secret", ""),
            redirect_uri=i_cfg.get("redirect_uri", ""),
            authority=i_cfg.get("authority", "https://login.microsoftonline.com"),
            post_logout_redirect_uri=i_cfg.get("post_logout_redirect_uri", ""),
            scopes=i_cfg.get("scopes") or None,
        )

    @property
    def _base(self) -> str:
        return f"{self.authority}/{self.tenant_id}/oauth2/v2.0"

    def authorization_url(self, state: str) -> str:
        query = urlencode({
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "response_mode": "query",
            "scope": " ".join(self.scopes),
            "state": state,
        })
        return f"{self._base}/authorize?{query}"

    def logout_url(self) -> str:
        if not self.post_logout_redirect_uri:
            return f"{self._base}/logout"
        query = urlencode({"post_logout_redirect_uri": self.post_logout_redirect_uri})
        return f"{self._base}/logout?{query}"

    async def _token_request(self, form: dict, failure_code: ErrorCode) -> TokenSet:
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": " ".join(self.scopes),
            **form,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self._base}/token", data=form)
        except httpx.HTTPError as e:
            raise AppError(failure_code, f"Identity provider unreachable: {e}", 401) from e

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 400 or not data.get("access_token"):
            detail = data.get("error_description") or data.get("error") or f"status {resp.status_code}"
            raise AppError(failure_code, f"Token request failed: {detail}", 401)

        return TokenSet(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
        )

    async def exchange_token(self, code: str) -> TokenSet:
        tokens = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            ErrorCode.INVALID_TOKEN,
        )
        logger.debug("Authorization code exchanged (refresh token: %s)", bool(tokens.refresh_token))
        return tokens

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            ErrorCode.TOKEN_EXPIRED,
        )
