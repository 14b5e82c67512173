from cadence.agent import Agent
from cadence.buffer import BufferDecision, ResponseUnit, StreamBuffer, UnitKind
from cadence.config import AgentConfig
from cadence.context import RoundContext, ToolContext, TurnState
from cadence.conversation import ConversationService, InMemoryConversationService
from cadence.delegation import delegate
from cadence.errors import AgentError, ErrorCategory, ErrorCode, StreamProtocolError, classify
from cadence.events import (
    DirectOutputEvent,
    ErrorEvent,
    FinalAnswerEvent,
    StreamEvent,
    TerminalEvent,
    TextDeltaEvent,
    ToolCallsEvent,
    ToolResultEvent,
)
from cadence.instrumentation import instrument, uninstrument
from cadence.lifecycle import LifecycleHook, LifecycleManager, LoggingHook
from cadence.logs import configure_logging
from cadence.message import Message, MessageRole, ToolCallRequestMessage, ToolCallResultMessage
from cadence.parser import decode_line, parse_lines, parse_stream
from cadence.provider import (
    ChatRequest,
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
    VLLMProvider,
)
from cadence.runner import Runner, TurnRequest, TurnResult
from cadence.sse import sse_generator
from cadence.streaming import AccumulatedMessage, DeltaAccumulator, StreamDelta, ToolCall
from cadence.tools import (
    DirectOutput,
    LLMRecoverableError,
    ResultKind,
    Tool,
    ToolInvocationResult,
    ToolRegistry,
    terminate,
    tool,
)

__all__ = [
    "AccumulatedMessage",
    "Agent",
    "AgentConfig",
    "AgentError",
    "BufferDecision",
    "ChatRequest",
    "ConversationService",
    "DeltaAccumulator",
    "DirectOutput",
    "DirectOutputEvent",
    "ErrorCategory",
    "ErrorCode",
    "ErrorEvent",
    "FinalAnswerEvent",
    "InMemoryConversationService",
    "LLMRecoverableError",
    "LifecycleHook",
    "LifecycleManager",
    "LoggingHook",
    "Message",
    "MessageRole",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "OpenRouter",
    "ResponseUnit",
    "ResultKind",
    "RoundContext",
    "Runner",
    "StreamBuffer",
    "StreamDelta",
    "StreamEvent",
    "StreamProtocolError",
    "TerminalEvent",
    "TextDeltaEvent",
    "Tool",
    "ToolCall",
    "ToolCallRequestMessage",
    "ToolCallResultMessage",
    "ToolCallsEvent",
    "ToolContext",
    "ToolInvocationResult",
    "ToolRegistry",
    "ToolResultEvent",
    "TurnRequest",
    "TurnResult",
    "TurnState",
    "UnitKind",
    "VLLMProvider",
    "classify",
    "configure_logging",
    "decode_line",
    "delegate",
    "instrument",
    "parse_lines",
    "parse_stream",
    "sse_generator",
    "terminate",
    "tool",
    "uninstrument",
]
