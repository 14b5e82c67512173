import logging
import re
import uuid

from cadence.agent import Agent
from cadence.context import ToolContext, TurnState
from cadence.runner import Runner, TurnRequest
from cadence.tools import DirectOutput, LLMRecoverableError, Tool

logger = logging.getLogger(__name__)


def _normalize_tool_name(name: str) -> str:
    """Normalize an agent name into a valid tool-name string.

    Lowercases, replaces whitespace/hyphens with underscores, strips
    non-alphanumeric characters.  E.g. ``"Billing Support"`` becomes
    ``"billing_support"``.
    """
    name = name.lower().strip()
    name = re.sub(r"[\s\-]+", "_", name)
    name = re.sub(r"[^a-z0-9_]", "", name)
    return name


def delegate(
    agent: Agent,
    runner: Runner | None = None,
    direct_output: bool = False,
    name: str | None = None,
    description: str | None = None,
) -> Tool:
    """Expose ``agent`` as a tool that answers a message with a nested turn.

    The sub-agent runs in a fresh conversation on behalf of the calling
    turn's user, and that conversation is cleared once the nested turn
    ends.  With ``direct_output`` set, its answer is surfaced to the user
    as-is and the calling turn ends without another model call.

    Args:
        agent: The sub-agent to run.
        runner: Runner for nested turns.  Without one, each call runs in a
            short-lived runner that is closed afterwards.
        direct_output: Return the answer as :class:`DirectOutput`.
        name: Tool name; defaults to ``ask_<normalized agent name>``.
        description: Tool description shown to the model.
    """
    tool_name = name or f"ask_{_normalize_tool_name(agent.name)}"
    tool_description = description or (
        f"Ask {agent.name}. {agent.description}" if agent.description else f"Ask {agent.name}."
    )

    async def nested_turn(nested: Runner, request: TurnRequest):
        try:
            return await nested.run(agent, request)
        finally:
            await nested.conversation.clear(request.conversation_id)

    async def run_sub_agent(message: str, context: ToolContext = None) -> str | DirectOutput:
        user_id = context.user_id if context is not None else "delegate"
        request = TurnRequest(
            user_id=user_id,
            conversation_id=f"{tool_name}-{uuid.uuid4().hex}",
            message=message,
        )
        logger.info(f"Delegating to {agent.name} in {request.conversation_id}")
        if runner is not None:
            result = await nested_turn(runner, request)
        else:
            async with Runner() as owned:
                result = await nested_turn(owned, request)

        if result.state is TurnState.FAILED:
            raise RuntimeError(f"{agent.name} failed: {result.error.user_message()}")
        if result.error is not None:
            raise LLMRecoverableError(f"{agent.name} could not finish: {result.error.user_message()}")
        if direct_output:
            return DirectOutput(content=result.content, source=agent.name)
        return result.content

    return Tool(
        func=run_sub_agent,
        name=tool_name,
        description=tool_description,
        parameters_schema={
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": f"Request and context for {agent.name}",
                },
            },
            "required": ["message"],
        },
    )
