"""
Relay: the core of ragdesk.

Takes one validated chat turn, streams it to the upstream API, re-frames
every upstream event for the browser the moment it arrives, and records the
exchange once the stream is over.

    browser  <--  data: {...}\\n\\n  <--  relay  <--  upstream SSE
                                           |
                                           +--> conversation store (at end)

Per turn:
  - every upstream event is written through unchanged, no buffering
  - the answer text and conversation id are aggregated on the side
  - once the upstream sequence ends without raising, one synthetic
    {"event": "done"} frame follows, even after an upstream error event;
    an upstream done is not forwarded
  - an exception from the upstream call becomes one {"event": "error"} frame
  - the exchange is persisted only if we know the conversation id and have
    something to store; a browser that hangs up mid-stream gets nothing
    persisted
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field

from ragdesk.errors import AppError, ErrorCode
from ragdesk.storage.conversations import ConversationStore
from ragdesk.storage.models import Message
from ragdesk.upstream.client import ChatRequest, ChatResponse
from ragdesk.upstream.events import (
    DoneEvent,
    ErrorEvent,
    MessageEndEvent,
    MessageEvent,
    StreamEvent,
)
from ragdesk.upstream.sse import format_sse

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
STREAM_MEDIA_TYPE = "text/event-stream; charset=utf-8"


def validate_chat_payload(payload, max_length: int) -> tuple[str, str]:
    """
    Check a decoded request body. Returns (trimmed query, conversation id).
    Raises AppError(validation_error, 400) with a user-facing message.
    """
    if not isinstance(payload, dict):
        raise AppError(ErrorCode.VALIDATION_ERROR, "Invalid request body", 400)

    query = payload.get("query")
    if not isinstance(query, str) or not query.strip():
        raise AppError(ErrorCode.VALIDATION_ERROR, "Please enter a message.", 400)

    query = query.strip()
    if len(query) > max_length:
        raise AppError(
            ErrorCode.VALIDATION_ERROR,
            f"Message is too long (max {max_length} characters).",
            400,
        )

    conversation_id = payload.get("conversationId")
    if not isinstance(conversation_id, str):
        conversation_id = ""
    return query, conversation_id.strip()


@dataclass
class ChatTurn:
    """One validated query from one user."""
    query: str
    user_id: str
    user_email: str
    department_code: str
    conversation_id: str = ""

    def to_request(self, response_mode: str) -> ChatRequest:
        return ChatRequest(
            query=self.query,
            user=self.user_email,
            inputs={
                "user_id": self.user_email,
                "department_code": self.department_code,
            },
            conversation_id=self.conversation_id,
            response_mode=response_mode,
        )


@dataclass
class TurnOutcome:
    """What the relay learned while streaming. Touched only by the relaying task."""
    conversation_id: str = ""
    parts: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def answer(self) -> str:
        return "".join(self.parts)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def observe(self, event: StreamEvent):
        if isinstance(event, MessageEvent):
            self.parts.append(event.answer)
            self._adopt(event.conversation_id)
        elif isinstance(event, MessageEndEvent):
            self._adopt(event.conversation_id)
        elif isinstance(event, ErrorEvent):
            self.error = event.message

    def _adopt(self, conversation_id: str):
        # Upstream is authoritative; last id seen wins
        if conversation_id and conversation_id != self.conversation_id:
            if self.conversation_id:
                logger.debug(
                    "Adopting upstream conversation id %s (was %s)",
                    conversation_id,
                    self.conversation_id,
                )
            self.conversation_id = conversation_id


def error_frame(message: str, code: str | None = None) -> str:
    payload = {"event": "error", "message": message}
    if code:
        payload["code"] = code
    return format_sse(payload)


class StreamRelay:
    """
    Bridges chat turns to the upstream client and the conversation store.

    client must provide stream_chat(ChatRequest) -> async iterator of
    StreamEvent and send_blocking(ChatRequest) -> ChatResponse
    (RetryingChatClient does both).
    """

    def __init__(self, client, conversations: ConversationStore):
        self.client = client
        self.conversations = conversations

    async def relay(self, turn: ChatTurn):
        """Async generator of SSE frames for one turn."""
        outcome = TurnOutcome(conversation_id=turn.conversation_id)
        events = self.client.stream_chat(turn.to_request("streaming"))
        logger.info(
            "Stream start: user=%s conv=%s len=%d",
            turn.user_email,
            turn.conversation_id or "new",
            len(turn.query),
        )

        try:
            async with aclosing(events):
                try:
                    async for event in events:
                        outcome.observe(event)
                        if isinstance(event, DoneEvent):
                            # only the relay writes done
                            continue
                        yield format_sse(event.to_dict())
                    yield format_sse(DoneEvent().to_dict())
                except AppError as e:
                    logger.warning("Stream failed (%s): %s", e.code.value, e.message)
                    outcome.error = e.message
                    yield error_frame(e.message, e.code.value)
                except Exception as e:
                    logger.exception("Stream failed unexpectedly")
                    outcome.error = str(e) or "Streaming failed"
                    yield error_frame(outcome.error)
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(
                "Client went away mid-stream (conv=%s), not persisting",
                outcome.conversation_id or "new",
            )
            raise

        logger.info(
            "Stream end: conv=%s chars=%d error=%s",
            outcome.conversation_id or "-",
            len(outcome.answer),
            outcome.error is not None,
        )
        self.persist(turn, outcome)

    async def send(self, turn: ChatTurn) -> ChatResponse:
        """Blocking-mode turn. Upstream failures propagate as AppError."""
        try:
            response = await self.client.send_blocking(turn.to_request("blocking"))
        except AppError as e:
            self.persist(turn, TurnOutcome(conversation_id=turn.conversation_id, error=e.message))
            raise

        self.persist(
            turn,
            TurnOutcome(conversation_id=response.conversation_id, parts=[response.answer]),
        )
        return response

    def persist(self, turn: ChatTurn, outcome: TurnOutcome) -> str | None:
        """
        Append the user query and the assistant result. A failed write is
        logged, never raised.
        """
        content = outcome.error if outcome.failed else outcome.answer
        if not outcome.conversation_id or not content:
            logger.debug(
                "Skipping persistence (conv=%r, has content=%s)",
                outcome.conversation_id,
                bool(content),
            )
            return None

        messages = [
            Message(role="user", content=turn.query),
            Message(role="assistant", content=content, error=outcome.error),
        ]
        try:
            return self.conversations.append(
                outcome.conversation_id,
                turn.user_id,
                turn.department_code,
                messages,
            )
        except Exception:
            logger.exception(
                "Failed to persist turn for conversation %s", outcome.conversation_id
            )
            return None
