from __future__ import annotations

from cadence.message import Message
from cadence.provider import ChatRequest, ModelProvider
from cadence.tools import Tool, ToolRegistry


class Agent:
    """
    Declarative description of an agent: which model to call, how to
    prompt it, and which tools it may use.  The :class:`~cadence.runner.Runner`
    drives the round loop; the agent itself holds no per-turn state.

    Args:
        name: Agent name, used in logs, spans and as a delegation source.
        model: Model identifier passed to the provider.
        provider: Model provider object, can be any of the provided objects or
            one custom for your architecture.
        system_prompt: System prompt injected at call time.
        tools: Functions decorated with :func:`~cadence.tools.tool`.
        description: Short summary, used when the agent is delegated to.
        temperature: Sampling temperature, or ``None`` for the provider default.
        max_tokens: Completion token limit, or ``None`` for the provider default.
        tool_choice: Tool-choice mode sent when tools are offered.
    """

    def __init__(
        self,
        name: str,
        model: str,
        provider: ModelProvider,
        system_prompt: str = "",
        tools: list[Tool] | None = None,
        description: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        tool_choice: str = "auto",
    ):
        self.name = name
        self.model = model
        self.provider = provider
        self.system_prompt = system_prompt
        self.description = description
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.tool_choice = tool_choice
        self.tool_registry = ToolRegistry(tools)

    def tool_schemas(self) -> list[dict]:
        return self.tool_registry.schemas()

    def build_request(
        self, messages: list[Message], stream: bool, tools_enabled: bool = True,
    ) -> ChatRequest:
        tools = self.tool_schemas() if tools_enabled else []
        return ChatRequest(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=tools or None,
            tool_choice=self.tool_choice if tools else None,
            stream=stream,
        )

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, model={self.model!r}, tools={self.tool_registry.names()})"
