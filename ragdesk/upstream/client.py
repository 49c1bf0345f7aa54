"""
Upstream chat client.

Speaks the Dify chat-messages API:
    POST {base_url}/chat-messages
    Authorization: Bearer <api key>
    {"inputs": {...}, "query": "...", "response_mode": "blocking"|"streaming",
     "conversation_id": "...", "user": "..."}

Blocking mode returns one JSON object. Streaming mode returns an SSE body that
is decoded incrementally and handed out one StreamEvent at a time.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator

import httpx

from ragdesk.errors import AppError, ErrorCode
from ragdesk.upstream.events import StreamEvent, parse_event
from ragdesk.upstream.sse import SSEDecoder

logger = logging.getLogger(__name__)

CHAT_MESSAGES_ENDPOINT = "/chat-messages"


@dataclass
class ChatRequest:
    """One query for the upstream API."""
    query: str
    user: str
    inputs: dict = field(default_factory=dict)
    conversation_id: str = ""
    response_mode: str = "blocking"

    def to_payload(self) -> dict:
        return {
            "inputs": self.inputs,
            "query": self.query,
            "response_mode": self.response_mode,
            "conversation_id": self.conversation_id,
            "user": self.user,
        }


@dataclass
class ChatResponse:
    """Blocking-mode answer."""
    answer: str
    conversation_id: str
    message_id: str = ""
    usage: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_data(cls, data) -> "ChatResponse":
        if (
            not isinstance(data, dict)
            or not isinstance(data.get("answer"), str)
            or not isinstance(data.get("conversation_id"), str)
        ):
            raise AppError(
                ErrorCode.INVALID_RESPONSE,
                "Upstream returned an unexpected response shape",
                502,
            )
        metadata = data.get("metadata")
        usage = metadata.get("usage") if isinstance(metadata, dict) else None
        return cls(
            answer=data["answer"],
            conversation_id=data["conversation_id"],
            message_id=data.get("message_id") or "",
            usage=usage if isinstance(usage, dict) else {},
            raw=data,
        )


def _is_error_body(body) -> bool:
    return (
        isinstance(body, dict)
        and isinstance(body.get("code"), str)
        and "message" in body
        and "status" in body
    )


def upstream_error(body, status: int) -> AppError:
    """Turn a non-2xx upstream reply into an AppError, keeping its status."""
    if _is_error_body(body):
        return AppError(
            ErrorCode.UPSTREAM_API_ERROR,
            f"Upstream API error ({body['code']}): {body['message']}",
            status,
        )
    return AppError(
        ErrorCode.UPSTREAM_API_ERROR,
        f"Upstream API error: status {status}",
        status,
    )


class DifyClient:
    """
    Thin async client for the upstream API.

    No retries here: send_once is exactly one POST. RetryingChatClient wraps
    it for blocking calls; streams are never retried.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30,
        stream_timeout: float = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self._transport = transport

    @classmethod
    def from_config(cls, cfg: dict) -> "DifyClient":
        up = cfg.get("upstream", {})
        return cls(
            base_url=up.get("url", ""),
            api_key=up.get("api_key", ""),
            timeout=up.get("timeout", 30),
            stream_timeout=up.get("stream_timeout", 300),
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self) -> str:
        return f"{self.base_url}{CHAT_MESSAGES_ENDPOINT}"

    def _client(self, timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def send_once(self, request: ChatRequest) -> ChatResponse:
        """One blocking-mode POST."""
        payload = request.to_payload()
        payload["response_mode"] = "blocking"

        try:
            async with self._client(self.timeout) as client:
                resp = await client.post(
                    self._url(), json=payload, headers=self._headers()
                )
        except httpx.TimeoutException as e:
            raise AppError(
                ErrorCode.CONNECTION_FAILED,
                f"Upstream timed out after {self.timeout}s: {e}",
                504,
            ) from e
        except httpx.HTTPError as e:
            raise AppError(
                ErrorCode.CONNECTION_FAILED,
                f"Failed to reach upstream: {e}",
                502,
            ) from e

        try:
            body = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None

        if resp.status_code >= 400:
            raise upstream_error(body, resp.status_code)

        if body is None:
            raise AppError(
                ErrorCode.INVALID_RESPONSE,
                "Upstream returned a body that is not JSON",
                502,
            )
        return ChatResponse.from_data(body)

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """
        Yield StreamEvents as they arrive.

        Ends after a terminal event (message_end / error) or when upstream
        closes the body. One call = one turn; the iterator cannot be rewound.
        """
        payload = request.to_payload()
        payload["response_mode"] = "streaming"
        deadline = time.monotonic() + self.stream_timeout
        timeout = httpx.Timeout(self.timeout, read=self.stream_timeout)
        decoder = SSEDecoder()

        try:
            async with self._client(timeout) as client:
                async with client.stream(
                    "POST", self._url(), json=payload, headers=self._headers()
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        try:
                            body = resp.json()
                        except (json.JSONDecodeError, UnicodeDecodeError):
                            body = None
                        raise upstream_error(body, resp.status_code)

                    async for chunk in resp.aiter_bytes():
                        for data in decoder.feed(chunk):
                            event = parse_event(data)
                            yield event
                            if event.terminal:
                                return
                        if time.monotonic() > deadline:
                            raise AppError(
                                ErrorCode.CONNECTION_FAILED,
                                f"Upstream stream exceeded {self.stream_timeout}s",
                                504,
                            )
                    decoder.close()
        except httpx.TimeoutException as e:
            logger.warning("Upstream stream timed out: %s", e)
            raise AppError(
                ErrorCode.CONNECTION_FAILED,
                f"Upstream stream timed out: {e}",
                504,
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Upstream stream failed: %s", e)
            raise AppError(
                ErrorCode.CONNECTION_FAILED,
                f"Failed to reach upstream: {e}",
                502,
            ) from e
