from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from cadence.message import Message, MessageRole, ToolCallResultMessage

if TYPE_CHECKING:
    from cadence.agent import Agent
    from cadence.conversation import ConversationService

logger = logging.getLogger(__name__)


class TurnState(Enum):
    RUNNING = "running"
    AWAITING_TOOLS = "awaiting_tools"
    TERMINATED_NORMAL = "terminated_normal"
    TERMINATED_DIRECT_OUTPUT = "terminated_direct_output"
    TERMINATED_MAX_ROUNDS = "terminated_max_rounds"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self not in (TurnState.RUNNING, TurnState.AWAITING_TOOLS)


@dataclass
class RoundContext:
    """Mutable state of one conversation turn.

    Holds the round counter, the messages produced during the turn and
    the terminal bookkeeping.  Prior history lives in the conversation
    service; :meth:`message_list` stitches the two together for the next
    model call.

    Args:
        conversation_id: Conversation the turn belongs to.
        user_id: The user who started the turn.
        system_prompt: Injected at call time, never stored in history.
        max_rounds: Round budget for the turn.
        max_context_tokens: Token budget for the prior-history window.
        conversation: Store for prior history, or ``None`` to keep the
            whole turn local.
    """

    conversation_id: str
    user_id: str
    system_prompt: str = ""
    max_rounds: int = 10
    max_context_tokens: int = 4000
    conversation: ConversationService | None = None
    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: TurnState = TurnState.RUNNING
    direct_output: bool = False
    model_calls: int = 0
    messages: list[Message] = field(default_factory=list)
    _round: int = field(default=0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def current_round(self) -> int:
        with self._lock:
            return self._round

    def advance_round(self) -> int:
        with self._lock:
            self._round += 1
            return self._round

    def max_rounds_reached(self) -> bool:
        return self.current_round >= self.max_rounds

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        logger.debug(f"Turn message added: role={message.role.value}, content={message.content[:50]!r}")

    def add_tool_result(self, tool_call_id: str, content: str) -> None:
        self.add_message(ToolCallResultMessage(content=content, tool_call_id=tool_call_id))

    async def message_list(self) -> list[Message]:
        """System prompt, trimmed prior history, then this turn's messages."""
        messages: list[Message] = []
        if self.system_prompt.strip():
            messages.append(Message(role=MessageRole.SYSTEM, content=self.system_prompt))
        if self.conversation is not None:
            messages.extend(await self.conversation.context_window(
                self.conversation_id, self.max_context_tokens, self.system_prompt,
            ))
        messages.extend(self.messages)
        return messages

    async def history(self) -> list[Message]:
        """Full persisted history followed by this turn's messages."""
        persisted = []
        if self.conversation is not None:
            persisted = await self.conversation.history(self.conversation_id)
        return [*persisted, *self.messages]


@dataclass
class ToolContext:
    """Runtime context injected into tools that declare a ``context`` parameter.

    Gives tools read access to the turn being executed.

    Args:
        round_context: The turn's :class:`RoundContext`.
        agent: The agent whose model requested the call.
        call_id: Identifier of the tool call being dispatched.
        tool_name: Name of the tool being dispatched.
    """

    round_context: RoundContext
    agent: Agent | None = None
    call_id: str = ""
    tool_name: str = ""

    @property
    def user_id(self) -> str:
        return self.round_context.user_id

    @property
    def conversation_id(self) -> str:
        return self.round_context.conversation_id

    @property
    def current_round(self) -> int:
        return self.round_context.current_round
