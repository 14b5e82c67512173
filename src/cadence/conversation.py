"""Conversation history storage.

The orchestrator treats context trimming as opaque: it asks the
service for a window that fits a token budget and uses whatever comes
back.  :class:`InMemoryConversationService` is the default store and is
suitable for development and tests.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod

from cadence.message import Message, MessageRole

logger = logging.getLogger(__name__)

# Tokens held back from every window for the model's reply framing.
RESERVED_TOKENS = 100


def estimate_tokens(text: str | None) -> int:
    """Rough token count: about four characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_message_tokens(message: Message) -> int:
    return estimate_tokens(message.content) + estimate_tokens(message.role.value)


class ConversationService(ABC):
    """Persistent conversation history keyed by conversation id."""

    @abstractmethod
    async def append(self, conversation_id: str, message: Message) -> None:
        ...

    async def append_many(self, conversation_id: str, messages: list[Message]) -> None:
        for message in messages:
            await self.append(conversation_id, message)

    @abstractmethod
    async def history(self, conversation_id: str) -> list[Message]:
        """Return the full history, oldest first."""
        ...

    @abstractmethod
    async def context_window(
        self, conversation_id: str, max_tokens: int, system_prompt: str | None = None,
    ) -> list[Message]:
        """Return the most recent messages that fit ``max_tokens``."""
        ...

    async def recent(self, conversation_id: str, limit: int) -> list[Message]:
        messages = await self.history(conversation_id)
        if limit <= 0:
            return []
        return messages[-limit:]

    @abstractmethod
    async def clear(self, conversation_id: str) -> None:
        ...


class InMemoryConversationService(ConversationService):

    def __init__(self):
        self._conversations: dict[str, list[Message]] = {}
        self._lock = asyncio.Lock()

    async def append(self, conversation_id: str, message: Message) -> None:
        async with self._lock:
            self._conversations.setdefault(conversation_id, []).append(message)
        logger.debug(f"Added {message.role.value} message to conversation {conversation_id}")

    async def append_many(self, conversation_id: str, messages: list[Message]) -> None:
        async with self._lock:
            self._conversations.setdefault(conversation_id, []).extend(messages)
        logger.debug(f"Added {len(messages)} messages to conversation {conversation_id}")

    async def history(self, conversation_id: str) -> list[Message]:
        return list(self._conversations.get(conversation_id, []))

    async def context_window(
        self, conversation_id: str, max_tokens: int, system_prompt: str | None = None,
    ) -> list[Message]:
        messages = self._conversations.get(conversation_id, [])
        available = max_tokens - estimate_tokens(system_prompt) - RESERVED_TOKENS

        window: list[Message] = []
        used = 0
        for message in reversed(messages):
            cost = estimate_message_tokens(message)
            if used + cost > available:
                break
            window.append(message)
            used += cost
        window.reverse()

        # A tool result is meaningless without the request that precedes it.
        while window and window[0].role == MessageRole.TOOL:
            used -= estimate_message_tokens(window.pop(0))

        logger.debug(
            f"Selected {len(window)} of {len(messages)} messages ({used} tokens) "
            f"for conversation {conversation_id}"
        )
        return window

    async def clear(self, conversation_id: str) -> None:
        async with self._lock:
            self._conversations.pop(conversation_id, None)
        logger.info(f"Cleared conversation {conversation_id}")
