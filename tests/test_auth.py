"""
Tests for the identity provider and directory clients, run against
httpx.MockTransport.
"""

import re
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from ragdesk.auth.directory import DEFAULT_GROUP_PATTERN, GraphDirectory, match_departments
from ragdesk.auth.identity import EntraIdentityProvider
from ragdesk.errors import AppError, ErrorCode

TENANT = "11111111-1111-1111-1111-111111111111"


def _provider(handler=None, **kwargs) -> EntraIdentityProvider:
    transport = httpx.MockTransport(handler) if handler else None
    return EntraIdentityProvider(
        tenant_id=TENANT,
        client_id="client-1",
        client_secret="shh",
        redirect_uri="https://chat.example.com/auth/callback",
        transport=transport,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Identity provider
# ---------------------------------------------------------------------------

def test_authorization_url():
    url = urlparse(_provider().authorization_url("state-1"))
    assert url.netloc == "login.microsoftonline.com"
    assert url.path == f"/{TENANT}/oauth2/v2.0/authorize"
    query = parse_qs(url.query)
    assert query["state"] == ["state-1"]
    assert query["response_type"] == ["code"]
    assert "offline_access" in query["scope"][0].split()


def test_logout_url_with_and_without_redirect():
    assert _provider().logout_url().endswith("/oauth2/v2.0/logout")
    url = _provider(post_logout_redirect_uri="https://chat.example.com/").logout_url()
    assert "post_logout_redirect_uri=https%3A%2F%2Fchat.example.com%2F" in url


@pytest.mark.asyncio
async def test_exchange_token_success():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={
            "access_token": "at",
            "refresh_token": "rt",
            "expires_in": 1800,
        })

    tokens = await _provider(handler).exchange_token("code-1")

    assert tokens.access_token == "at"
    assert tokens.refresh_token == "rt"
    assert tokens.expires_in == 1800
    assert seen["url"].endswith(f"/{TENANT}/oauth2/v2.0/token")
    assert seen["form"]["grant_type"] == ["authorization_code"]
    assert seen["form"]["code"] == ["code-1"]


@pytest.mark.asyncio
async def test_exchange_token_failure_is_invalid_token():
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "code used"})

    with pytest.raises(AppError) as exc:
        await _provider(handler).exchange_token("code-1")
    assert exc.value.code == ErrorCode.INVALID_TOKEN
    assert "code used" in exc.value.message


@pytest.mark.asyncio
async def test_refresh_failure_is_token_expired():
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    with pytest.raises(AppError) as exc:
        await _provider(handler).refresh_token("rt")
    assert exc.value.code == ErrorCode.TOKEN_EXPIRED
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_refresh_unreachable_is_token_expired():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(AppError) as exc:
        await _provider(handler).refresh_token("rt")
    assert exc.value.code == ErrorCode.TOKEN_EXPIRED


@pytest.mark.asyncio
async def test_refresh_sends_refresh_grant():
    seen = {}

    def handler(request):
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"access_token": "at-2", "expires_in": 60})

    tokens = await _provider(handler).refresh_token("rt-1")
    assert tokens.access_token == "at-2"
    assert tokens.refresh_token is None
    assert seen["form"]["grant_type"] == ["refresh_token"]
    assert seen["form"]["refresh_token"] == ["rt-1"]


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

def test_match_departments_default_pattern():
    groups = [
        {"id": "g1", "displayName": "DEPT_001_Sales"},
        {"id": "g2", "displayName": "All Staff"},
        {"id": "g3", "displayName": "DEPT_002"},
        {"id": "g4"},
    ]
    found = match_departments(groups, re.compile(DEFAULT_GROUP_PATTERN))
    assert [(d.code, d.name, d.group_id) for d in found] == [
        ("001", "Sales", "g1"),
        ("002", "", "g3"),
    ]


@pytest.mark.asyncio
async def test_get_user():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer at"
        return httpx.Response(200, json={
            "id": "u1",
            "displayName": "Alice",
            "userPrincipalName": "alice@example.com",
        })

    directory = GraphDirectory(transport=httpx.MockTransport(handler))
    user = await directory.get_user("at")
    assert user.id == "u1"
    assert user.email == "alice@example.com"


@pytest.mark.asyncio
async def test_get_departments_follows_next_link():
    def handler(request):
        if "page2" in str(request.url):
            return httpx.Response(200, json={"value": [{"id": "g2", "displayName": "DEPT_002_Ops"}]})
        return httpx.Response(200, json={
            "value": [{"id": "g1", "displayName": "Engineering"}],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/memberOf?page2",
        })

    directory = GraphDirectory(transport=httpx.MockTransport(handler))
    departments = await directory.get_departments("at")
    assert [d.code for d in departments] == ["002"]


@pytest.mark.asyncio
async def test_directory_failure_is_directory_error():
    def handler(request):
        return httpx.Response(403, json={"error": {"code": "Forbidden"}})

    directory = GraphDirectory(transport=httpx.MockTransport(handler))
    with pytest.raises(AppError) as exc:
        await directory.get_user("at")
    assert exc.value.code == ErrorCode.DIRECTORY_ERROR
    assert exc.value.status_code == 502
