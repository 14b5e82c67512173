"""Chat messages as they are stored in history and sent to the model."""

from enum import Enum

from pydantic import BaseModel, field_serializer

from cadence.streaming import ToolCall


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str = ""

    @field_serializer("role")
    def _role_value(self, role: MessageRole) -> str:
        return role.value


class ToolCallRequestMessage(Message):
    """Assistant message announcing the tool calls of one round.

    ``content`` keeps any prose the model wrote alongside the calls.
    """

    role: MessageRole = MessageRole.ASSISTANT
    tool_calls: list[ToolCall]

    @field_serializer("tool_calls")
    def _openai_tool_calls(self, tool_calls: list[ToolCall]) -> list[dict]:
        # An empty argument string is not valid JSON for the API.
        return [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments or "{}"},
            }
            for call in tool_calls
        ]


class ToolCallResultMessage(Message):
    """Output of one tool call, keyed to the request by ``tool_call_id``."""

    role: MessageRole = MessageRole.TOOL
    tool_call_id: str
