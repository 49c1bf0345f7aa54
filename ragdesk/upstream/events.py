"""
Stream events: the closed set of things that can come down the wire in a turn.

    MessageEvent      partial answer token (+ conversation id)
    MessageEndEvent   end of turn, carries usage metadata
    ErrorEvent        upstream gave up mid-turn
    DoneEvent         end-of-turn marker; the relay writes exactly one per turn
    PassthroughEvent  anything else upstream sends (ping, workflow_*, ...);
                      relayed verbatim, never interpreted

Every event keeps the payload it was parsed from, so to_dict() hands back
exactly what upstream sent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

# Dify agent apps stream "agent_message" with the same shape as "message"
_MESSAGE_NAMES = ("message", "agent_message")


@dataclass(frozen=True)
class MessageEvent:
    answer: str = ""
    conversation_id: str = ""
    message_id: str = ""
    raw: dict = field(default_factory=dict, compare=False)

    name = "message"
    terminal = False

    def to_dict(self) -> dict:
        return self.raw or {
            "event": self.name,
            "answer": self.answer,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
        }


@dataclass(frozen=True)
class MessageEndEvent:
    conversation_id: str = ""
    message_id: str = ""
    usage: dict = field(default_factory=dict, compare=False)
    raw: dict = field(default_factory=dict, compare=False)

    name = "message_end"
    terminal = True

    def to_dict(self) -> dict:
        return self.raw or {
            "event": self.name,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "metadata": {"usage": self.usage},
        }


@dataclass(frozen=True)
class ErrorEvent:
    message: str = ""
    code: str = ""
    status: int | None = None
    raw: dict = field(default_factory=dict, compare=False)

    name = "error"
    terminal = True

    def to_dict(self) -> dict:
        if self.raw:
            return self.raw
        data = {"event": self.name, "message": self.message}
        if self.code:
            data["code"] = self.code
        if self.status is not None:
            data["status"] = self.status
        return data


@dataclass(frozen=True)
class DoneEvent:
    name = "done"
    terminal = True

    def to_dict(self) -> dict:
        return {"event": self.name}


@dataclass(frozen=True)
class PassthroughEvent:
    raw: dict = field(default_factory=dict)

    terminal = False

    @property
    def name(self) -> str:
        return str(self.raw.get("event", ""))

    def to_dict(self) -> dict:
        return self.raw


StreamEvent = Union[MessageEvent, MessageEndEvent, ErrorEvent, DoneEvent, PassthroughEvent]


def _str(value) -> str:
    return value if isinstance(value, str) else ""


def parse_event(payload: dict) -> StreamEvent:
    """Map one decoded `data:` payload onto its event type."""
    name = payload.get("event")

    if name in _MESSAGE_NAMES:
        return MessageEvent(
            answer=_str(payload.get("answer")),
            conversation_id=_str(payload.get("conversation_id")),
            message_id=_str(payload.get("message_id")),
            raw=payload,
        )

    if name == "message_end":
        metadata = payload.get("metadata")
        usage = metadata.get("usage") if isinstance(metadata, dict) else None
        return MessageEndEvent(
            conversation_id=_str(payload.get("conversation_id")),
            message_id=_str(payload.get("message_id")),
            usage=usage if isinstance(usage, dict) else {},
            raw=payload,
        )

    if name == "error":
        status = payload.get("status")
        return ErrorEvent(
            message=_str(payload.get("message")) or "Upstream reported an error",
            code=_str(payload.get("code")),
            status=status if isinstance(status, int) else None,
            raw=payload,
        )

    if name == "done":
        return DoneEvent()

    return PassthroughEvent(raw=payload)
