"""
Conversation memory.

A ChatMemoryStore persists ordered message lists per conversation key.
MessageWindowChatMemory applies the retention policy on top of a store, and
ConversationMemory is what the engine talks to: has_memory / load / append.
The engine never caches what `load` returns across a suspension point.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

from .models import ASSISTANT, SYSTEM, TOOL, ChatMessage


class ChatMemoryStore:
    """Storage contract for conversation messages, keyed by memory id."""

    def get_messages(self, memory_id: Any) -> List[ChatMessage]:  # pragma: no cover - interface only
        raise NotImplementedError

    def update_messages(self, memory_id: Any, messages: List[ChatMessage]) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete_messages(self, memory_id: Any) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class InMemoryChatMemoryStore(ChatMemoryStore):
    def __init__(self) -> None:
        self._messages: Dict[Any, List[ChatMessage]] = {}
        self._lock = threading.Lock()

    def get_messages(self, memory_id: Any) -> List[ChatMessage]:
        with self._lock:
            return list(self._messages.get(memory_id, []))

    def update_messages(self, memory_id: Any, messages: List[ChatMessage]) -> None:
        with self._lock:
            self._messages[memory_id] = list(messages)

    def delete_messages(self, memory_id: Any) -> None:
        with self._lock:
            self._messages.pop(memory_id, None)


def _ensure_capacity(messages: List[ChatMessage], max_messages: Optional[int]) -> None:
    if max_messages is None:
        return
    while len(messages) > max_messages:
        index = 1 if messages and messages[0].role == SYSTEM else 0
        if index >= len(messages):
            return
        evicted = messages.pop(index)
        # results answering an evicted tool request are meaningless without it
        if evicted.role == ASSISTANT and evicted.has_tool_execution_requests():
            while index < len(messages) and messages[index].role == TOOL:
                messages.pop(index)


class MessageWindowChatMemory:
    """
    Keeps the last `max_messages` messages of one conversation.

    The system message is unique and pinned first: adding the same system
    message again is a no-op, adding a different one replaces it.
    """

    def __init__(self, memory_id: Any, store: ChatMemoryStore, max_messages: Optional[int] = None):
        self.memory_id = memory_id
        self.store = store
        self.max_messages = max_messages

    def messages(self) -> List[ChatMessage]:
        messages = self.store.get_messages(self.memory_id)
        _ensure_capacity(messages, self.max_messages)
        return messages

    def add(self, message: ChatMessage) -> None:
        messages = self.store.get_messages(self.memory_id)
        if message.role == SYSTEM:
            existing = next((m for m in messages if m.role == SYSTEM), None)
            if existing is not None:
                if existing == message:
                    return
                messages.remove(existing)
            messages.insert(0, message)
        else:
            messages.append(message)
        _ensure_capacity(messages, self.max_messages)
        self.store.update_messages(self.memory_id, messages)

    def clear(self) -> None:
        self.store.delete_messages(self.memory_id)


class ChatMemoryProvider:
    """Hands out the windowed memory for a conversation key."""

    def __init__(self, store: Optional[ChatMemoryStore] = None, max_messages: Optional[int] = 20):
        self.store = store if store is not None else InMemoryChatMemoryStore()
        self.max_messages = max_messages

    def get(self, memory_id: Any) -> MessageWindowChatMemory:
        return MessageWindowChatMemory(memory_id, self.store, self.max_messages)


class ConversationMemory:
    """Memory as seen by the engine. Without a provider the service has no memory."""

    def __init__(self, provider: Optional[ChatMemoryProvider] = None):
        self.provider = provider

    def has_memory(self) -> bool:
        return self.provider is not None

    def load(self, memory_id: Any) -> List[ChatMessage]:
        if self.provider is None:
            return []
        return self.provider.get(memory_id).messages()

    def append(self, memory_id: Any, message: ChatMessage) -> None:
        if self.provider is None:
            return
        self.provider.get(memory_id).add(message)

    def remove(self, memory_id: Any) -> None:
        if self.provider is not None:
            self.provider.get(memory_id).clear()
