"""
Tests for the upstream chat client.
Streaming bodies are served by httpx.MockTransport; blocking calls patch
httpx.AsyncClient the way the backend tests do.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from ragdesk.errors import AppError, ErrorCode
from ragdesk.upstream.client import ChatRequest, ChatResponse, DifyClient
from ragdesk.upstream.events import ErrorEvent, MessageEndEvent, MessageEvent
from ragdesk.upstream.sse import format_sse


def _sse_body(*payloads) -> bytes:
    return "".join(format_sse(p) for p in payloads).encode()


def _client(handler) -> DifyClient:
    return DifyClient(
        "http://dify.test/v1/",
        "app-key",
        transport=httpx.MockTransport(handler),
    )


async def _collect(client: DifyClient, request: ChatRequest):
    return [event async for event in client.stream_chat(request)]


def _mock_async_client(mock_resp=None, side_effect=None):
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = mock_resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

def test_chat_request_payload():
    req = ChatRequest(
        query="hello",
        user="a@example.com",
        inputs={"department_code": "001"},
        conversation_id="c1",
        response_mode="streaming",
    )
    assert req.to_payload() == {
        "inputs": {"department_code": "001"},
        "query": "hello",
        "response_mode": "streaming",
        "conversation_id": "c1",
        "user": "a@example.com",
    }


def test_base_url_trailing_slash_is_dropped():
    client = DifyClient("http://dify.test/v1/", "k")
    assert client.base_url == "http://dify.test/v1"


def test_from_config():
    client = DifyClient.from_config({
        "upstream": {"url": "http://dify.test/v1", "api_key": "k", "timeout": 5},
    })
    assert client.base_url == "http://dify.test/v1"
    assert client.timeout == 5
    assert client.stream_timeout == 300


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_once_success():
    mock_resp = MagicMock()
    mock_resp.status_code = 200
    mock_resp.json.return_value = {
        "answer": "hi there",
        "conversation_id": "c1",
        "message_id": "m1",
        "metadata": {"usage": {"total_tokens": 3}},
    }

    with patch("ragdesk.upstream.client.httpx.AsyncClient") as mock_cls:
        mock_client = _mock_async_client(mock_resp)
        mock_cls.return_value = mock_client

        result = await DifyClient("http://dify.test/v1", "k").send_once(
            ChatRequest(query="hello", user="u")
        )

    assert isinstance(result, ChatResponse)
    assert result.answer == "hi there"
    assert result.conversation_id == "c1"
    assert result.usage == {"total_tokens": 3}

    url = mock_client.post.call_args.args[0]
    kwargs = mock_client.post.call_args.kwargs
    assert url == "http://dify.test/v1/chat-messages"
    assert kwargs["headers"]["Authorization"] == "Bearer k"
    assert kwargs["json"]["response_mode"] == "blocking"


@pytest.mark.asyncio
async def test_send_once_structured_error_body():
    mock_resp = MagicMock()
    mock_resp.status_code = 400
    mock_resp.json.return_value = {"code": "invalid_param", "message": "bad query", "status": 400}

    with patch("ragdesk.upstream.client.httpx.AsyncClient") as mock_cls:
        mock_cls.return_value = _mock_async_client(mock_resp)
        with pytest.raises(AppError) as exc:
            await DifyClient("http://dify.test/v1", "k").send_once(
                ChatRequest(query="hello", user="u")
            )

    assert exc.value.code == ErrorCode.UPSTREAM_API_ERROR
    assert exc.value.status_code == 400
    assert "invalid_param" in exc.value.message
    assert "bad query" in exc.value.message


@pytest.mark.asyncio
async def test_send_once_unstructured_error_keeps_status():
    mock_resp = MagicMock()
    mock_resp.status_code = 503
    mock_resp.json.side_effect = json.JSONDecodeError("x", "", 0)

    with patch("ragdesk.upstream.client.httpx.AsyncClient") as mock_cls:
        mock_cls.return_value = _mock_async_client(mock_resp)
        with pytest.raises(AppError) as exc:
            await DifyClient("http://dify.test/v1", "k").send_once(
                ChatRequest(query="hello", user="u")
            )

    assert exc.value.code == ErrorCode.UPSTREAM_API_ERROR
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_send_once_wrong_shape_is_invalid_response():
    mock_resp = MagicMock()
    mock_resp.status_code = 200
    mock_resp.json.return_value = {"answer": 12}

    with patch("ragdesk.upstream.client.httpx.AsyncClient") as mock_cls:
        mock_cls.return_value = _mock_async_client(mock_resp)
        with pytest.raises(AppError) as exc:
            await DifyClient("http://dify.test/v1", "k").send_once(
                ChatRequest(query="hello", user="u")
            )

    assert exc.value.code == ErrorCode.INVALID_RESPONSE


@pytest.mark.asyncio
async def test_send_once_timeout_is_connection_failed():
    with patch("ragdesk.upstream.client.httpx.AsyncClient") as mock_cls:
        mock_cls.return_value = _mock_async_client(
            side_effect=httpx.ReadTimeout("timed out")
        )
        with pytest.raises(AppError) as exc:
            await DifyClient("http://dify.test/v1", "k", timeout=1).send_once(
                ChatRequest(query="hello", user="u")
            )

    assert exc.value.code == ErrorCode.CONNECTION_FAILED
    assert exc.value.status_code == 504


@pytest.mark.asyncio
async def test_send_once_connect_error_is_connection_failed():
    with patch("ragdesk.upstream.client.httpx.AsyncClient") as mock_cls:
        mock_cls.return_value = _mock_async_client(
            side_effect=httpx.ConnectError("refused")
        )
        with pytest.raises(AppError) as exc:
            await DifyClient("http://dify.test/v1", "k").send_once(
                ChatRequest(query="hello", user="u")
            )

    assert exc.value.code == ErrorCode.CONNECTION_FAILED
    assert exc.value.status_code == 502


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_yields_events_in_order():
    seen = {}

    def handler(request: httpx.Request):
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, content=_sse_body(
            {"event": "message", "answer": "hi", "conversation_id": "c1"},
            {"event": "message", "answer": " there", "conversation_id": "c1"},
            {"event": "message_end", "conversation_id": "c1"},
        ))

    events = await _collect(_client(handler), ChatRequest(query="hello", user="u"))

    assert [type(e) for e in events] == [MessageEvent, MessageEvent, MessageEndEvent]
    assert "".join(e.answer for e in events if isinstance(e, MessageEvent)) == "hi there"
    assert seen["body"]["response_mode"] == "streaming"
    assert seen["auth"] == "Bearer app-key"


@pytest.mark.asyncio
async def test_stream_stops_at_terminal_event():
    def handler(request):
        return httpx.Response(200, content=_sse_body(
            {"event": "error", "message": "quota exceeded", "status": 429},
            {"event": "message", "answer": "never seen"},
        ))

    events = await _collect(_client(handler), ChatRequest(query="hello", user="u"))
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].message == "quota exceeded"


@pytest.mark.asyncio
async def test_stream_ends_when_upstream_closes():
    def handler(request):
        body = _sse_body({"event": "message", "answer": "partial"}) + b'data: {"event": "mess'
        return httpx.Response(200, content=body)

    events = await _collect(_client(handler), ChatRequest(query="hello", user="u"))
    assert len(events) == 1
    assert events[0].answer == "partial"


@pytest.mark.asyncio
async def test_stream_error_status_raises_before_any_event():
    def handler(request):
        return httpx.Response(
            401, json={"code": "unauthorized", "message": "bad key", "status": 401}
        )

    with pytest.raises(AppError) as exc:
        await _collect(_client(handler), ChatRequest(query="hello", user="u"))
    assert exc.value.code == ErrorCode.UPSTREAM_API_ERROR
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_stream_malformed_json_raises_invalid_response():
    def handler(request):
        return httpx.Response(200, content=b"data: {oops\n\n")

    with pytest.raises(AppError) as exc:
        await _collect(_client(handler), ChatRequest(query="hello", user="u"))
    assert exc.value.code == ErrorCode.INVALID_RESPONSE


@pytest.mark.asyncio
async def test_stream_transport_failure_is_connection_failed():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AppError) as exc:
        await _collect(_client(handler), ChatRequest(query="hello", user="u"))
    assert exc.value.code == ErrorCode.CONNECTION_FAILED
