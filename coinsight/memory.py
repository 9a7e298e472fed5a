"""
In-process conversation memory.

Structure
─────────
ConversationStore  (LRU, at most ``max_conversations`` entries)
  └── id → ConversationMemory  (FIFO, at most ``max_messages`` messages)
        └── ConversationMessage(role, content, timestamp)

Nothing is persisted; all state is lost on restart. Both classes take a lock
on every operation because Flask serves requests from multiple threads.
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict, deque
from threading import Lock, RLock
from typing import Optional

from coinsight.models import ConversationMessage

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 10
DEFAULT_MAX_CONVERSATIONS = 500


class ConversationMemory:
    """A bounded, ordered log of role-tagged messages for one conversation."""

    def __init__(self, conversation_id: str, max_messages: int = DEFAULT_MAX_MESSAGES) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1.")
        self.conversation_id = conversation_id
        self.max_messages = max_messages
        self._messages: deque[ConversationMessage] = deque(maxlen=max_messages)
        self._lock = Lock()

    def add_message(self, role: str, content: str) -> ConversationMessage:
        """Append a message, evicting the oldest once the cap is reached."""
        message = ConversationMessage(role=role, content=content)
        with self._lock:
            self._messages.append(message)
        return message

    def messages(self) -> list[ConversationMessage]:
        with self._lock:
            return list(self._messages)

    def get_history(self) -> str:
        """Return the transcript as ``role: content`` lines, oldest first."""
        return "\n".join(f"{m.role}: {m.content}" for m in self.messages())

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)


class ConversationStore:
    """Owns every ``ConversationMemory``, evicting the least recently used."""

    def __init__(
        self,
        max_conversations: int = DEFAULT_MAX_CONVERSATIONS,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> None:
        self.max_conversations = max_conversations
        self.max_messages = max_messages
        self._conversations: OrderedDict[str, ConversationMemory] = OrderedDict()
        self._lock = RLock()

    def get_or_create(self, conversation_id: Optional[str] = None) -> ConversationMemory:
        """Return the conversation for *conversation_id*, creating it if unknown.

        A client-supplied id that is not (or no longer) in the store starts a
        fresh conversation under that id. Without an id a new one is generated.
        """
        with self._lock:
            if conversation_id and conversation_id in self._conversations:
                self._conversations.move_to_end(conversation_id)
                return self._conversations[conversation_id]

            conversation_id = conversation_id or uuid.uuid4().hex
            memory = ConversationMemory(conversation_id, self.max_messages)
            self._conversations[conversation_id] = memory
            while len(self._conversations) > self.max_conversations:
                evicted, _ = self._conversations.popitem(last=False)
                logger.info("Evicted least recently used conversation %s", evicted)
            return memory

    def get(self, conversation_id: str) -> Optional[ConversationMemory]:
        """Return an existing conversation (marking it used), or ``None``."""
        with self._lock:
            memory = self._conversations.get(conversation_id)
            if memory is not None:
                self._conversations.move_to_end(conversation_id)
            return memory

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._conversations

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)
