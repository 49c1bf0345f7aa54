"""
Upstream chat API: client, SSE framing, event types, retry policy.
"""
from ragdesk.upstream.client import ChatRequest, ChatResponse, DifyClient
from ragdesk.upstream.events import (
    DoneEvent,
    ErrorEvent,
    MessageEndEvent,
    MessageEvent,
    PassthroughEvent,
    StreamEvent,
    parse_event,
)
from ragdesk.upstream.retry import RetryingChatClient
from ragdesk.upstream.sse import SSEDecoder, format_sse

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "DifyClient",
    "RetryingChatClient",
    "SSEDecoder",
    "format_sse",
    "StreamEvent",
    "MessageEvent",
    "MessageEndEvent",
    "ErrorEvent",
    "DoneEvent",
    "PassthroughEvent",
    "parse_event",
]
