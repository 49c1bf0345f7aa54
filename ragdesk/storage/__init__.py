from ragdesk.storage.conversations import (
    ConversationStore,
    MemoryConversationStore,
    SQLiteConversationStore,
    make_store,
)
from ragdesk.storage.models import ConversationRecord, Message

__all__ = [
    "ConversationStore",
    "MemoryConversationStore",
    "SQLiteConversationStore",
    "make_store",
    "ConversationRecord",
    "Message",
]
