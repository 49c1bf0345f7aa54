"""
Data models for conversation storage.
These define the shape of data flowing from the relay into the store.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from uuid import uuid4

ROLES = ("user", "assistant", "system")


@dataclass
class Message:
    """A single message in a conversation."""
    role: str = ""           # "user", "assistant", "system"
    content: str = ""
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    error: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ConversationRecord:
    """All messages sharing a conversation id, plus who owns them."""
    conversation_id: str
    user_id: str
    department_code: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    messages: list[Message] = field(default_factory=list)

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def to_dict(self) -> dict:
        return {
            "conversationId": self.conversation_id,
            "userId": self.user_id,
            "departmentCode": self.department_code,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
        }

    def summary(self) -> dict:
        """Listing view: no message bodies beyond a preview of the last one."""
        last = self.last_message
        return {
            "conversationId": self.conversation_id,
            "updatedAt": self.updated_at,
            "createdAt": self.created_at,
            "messageCount": len(self.messages),
            "preview": last.content[:120] if last else "",
        }
