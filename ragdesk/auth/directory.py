"""
Directory lookups (Microsoft Graph): who the user is and which department
groups they belong to.

Department groups are recognised by display name. The configured pattern must
have a named group `code` and may have `name`, e.g. the default
    ^DEPT_(?P<code>[^_]+)(?:_(?P<name>.*))?$
turns "DEPT_001_Sales" into code "001", name "Sales".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import httpx

from ragdesk.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_GROUP_PATTERN = r"^DEPT_(?P<code>[^_]+)(?:_(?P<name>.*))?$"


@dataclass
class UserInfo:
    id: str
    display_name: str
    email: str


@dataclass
class Department:
    code: str
    name: str
    group_id: str
    group_name: str


def match_departments(groups: list[dict], pattern: re.Pattern) -> list[Department]:
    """Pick department groups out of a memberOf listing, in listing order."""
    found = []
    for group in groups:
        display = group.get("displayName") or ""
        m = pattern.match(display)
        if not m:
            continue
        parts = m.groupdict()
        found.append(Department(
            code=parts.get("code") or "",
            name=parts.get("name") or "",
            group_id=group.get("id", ""),
            group_name=display,
        ))
    return [d for d in found if d.code]


class GraphDirectory:

    def __init__(
        self,
        url: str = "https://graph.microsoft.com/v1.0",
        group_pattern: str = DEFAULT_GROUP_PATTERN,
        timeout: float = 15,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.group_pattern = re.compile(group_pattern)
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, cfg: dict) -> "GraphDirectory":
        d_cfg = cfg.get("directory", {})
        return cls(
            url=d_cfg.get("url", "https://graph.microsoft.com/v1.0"),
            group_pattern=d_cfg.get("department_group_pattern") or DEFAULT_GROUP_PATTERN,
        )

    async def _get(self, client: httpx.AsyncClient, url: str, access_token: str) -> dict:
        try:
            resp = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AppError(
                ErrorCode.DIRECTORY_ERROR, f"Directory lookup failed: {e}", 502
            ) from e

    async def get_user(self, access_token: str) -> UserInfo:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            data = await self._get(client, f"{self.url}/me", access_token)

        if not data.get("id"):
            raise AppError(ErrorCode.DIRECTORY_ERROR, "Directory returned no user id", 502)
        return UserInfo(
            id=data["id"],
            display_name=data.get("displayName") or "",
            email=data.get("mail") or data.get("userPrincipalName") or "",
        )

    async def get_departments(self, access_token: str) -> list[Department]:
        groups: list[dict] = []
        url = f"{self.url}/me/memberOf"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while url:
                data = await self._get(client, url, access_token)
                groups.extend(data.get("value", []))
                url = data.get("@odata.nextLink")

        departments = match_departments(groups, self.group_pattern)
        logger.debug(
            "memberOf: %d groups, %d department matches", len(groups), len(departments)
        )
        return departments
