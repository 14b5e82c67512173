"""Error taxonomy for agent turns.

Every failure that crosses a module boundary is an :class:`AgentError`
carrying an :class:`ErrorCode`.  The code decides whether the error is
retryable and whether its detail text may be shown to the end user.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import openai

GENERIC_ERROR_MESSAGE = "Internal error, please try again later."


class ErrorCategory(Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    TOOL = "tool"
    BUDGET = "budget"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class ErrorCode(Enum):
    """Known failure modes.

    Each member is ``(code, description, category, retryable, user_facing)``.
    """

    LLM_CALL_FAILED = ("1001", "Model call failed", ErrorCategory.TRANSPORT, True, False)
    LLM_TIMEOUT = ("1002", "Model call timed out", ErrorCategory.TRANSPORT, True, False)
    LLM_RATE_LIMITED = ("1003", "Model call rate limited", ErrorCategory.TRANSPORT, True, False)
    LLM_INVALID_RESPONSE = ("1004", "Invalid model response", ErrorCategory.PROTOCOL, False, False)
    LLM_INVALID_REQUEST = ("1005", "Model rejected the request", ErrorCategory.PROTOCOL, False, False)
    NETWORK_ERROR = ("1006", "Network error", ErrorCategory.TRANSPORT, True, False)

    TOOL_EXECUTION_FAILED = ("2001", "Tool execution failed", ErrorCategory.TOOL, True, False)
    TOOL_NOT_FOUND = ("2002", "Tool not found", ErrorCategory.TOOL, False, True)
    TOOL_INVALID_ARGUMENTS = ("2003", "Invalid tool arguments", ErrorCategory.TOOL, False, True)
    TOOL_TIMEOUT = ("2004", "Tool execution timed out", ErrorCategory.TOOL, True, False)

    STREAM_PROTOCOL_ERROR = ("3001", "Malformed model stream", ErrorCategory.PROTOCOL, False, False)

    MAX_ROUNDS_EXCEEDED = ("4001", "Maximum rounds exceeded", ErrorCategory.BUDGET, False, True)
    CONSECUTIVE_FAILURES_EXCEEDED = (
        "4002", "Too many consecutive failed tool batches", ErrorCategory.BUDGET, False, True,
    )

    CONFIG_INVALID = ("6001", "Invalid configuration", ErrorCategory.CONFIGURATION, False, True)
    CONFIG_MISSING = ("6002", "Missing configuration", ErrorCategory.CONFIGURATION, False, True)

    SYSTEM_ERROR = ("9001", "Internal error", ErrorCategory.SYSTEM, False, False)

    def __init__(self, code, description, category, retryable, user_facing):
        self.code = code
        self.description = description
        self.category = category
        self.retryable = retryable
        self.user_facing = user_facing


class AgentError(Exception):
    """An error classified by :class:`ErrorCode`.

    Args:
        code: The classification of the failure.
        detail: Human-readable context for the failure.
        cause: The originating exception, if any.
    """

    def __init__(self, code: ErrorCode, detail: str = "", cause: BaseException | None = None):
        self.code = code
        self.detail = detail or code.description
        self.cause = cause
        super().__init__(f"[{code.code}] {code.description}: {self.detail}")
        if cause is not None:
            self.__cause__ = cause

    @property
    def category(self) -> ErrorCategory:
        return self.code.category

    @property
    def retryable(self) -> bool:
        return self.code.retryable

    @property
    def user_facing(self) -> bool:
        return self.code.user_facing

    def user_message(self) -> str:
        """Text safe to show the end user."""
        if self.user_facing:
            return self.detail
        return GENERIC_ERROR_MESSAGE


class StreamProtocolError(AgentError):
    """Raised when the model stream violates the delta protocol."""

    def __init__(self, detail: str, cause: BaseException | None = None):
        super().__init__(ErrorCode.STREAM_PROTOCOL_ERROR, detail, cause)


def classify(exc: BaseException) -> AgentError:
    """Map any exception onto the error taxonomy."""
    if isinstance(exc, AgentError):
        return exc
    # APITimeoutError subclasses APIConnectionError, so it goes first.
    if isinstance(exc, openai.APITimeoutError):
        return AgentError(ErrorCode.LLM_TIMEOUT, str(exc), exc)
    if isinstance(exc, openai.APIConnectionError):
        return AgentError(ErrorCode.NETWORK_ERROR, str(exc), exc)
    if isinstance(exc, openai.RateLimitError):
        return AgentError(ErrorCode.LLM_RATE_LIMITED, str(exc), exc)
    if isinstance(exc, openai.AuthenticationError):
        return AgentError(ErrorCode.CONFIG_INVALID, "Model provider rejected the credentials", exc)
    if isinstance(exc, openai.BadRequestError):
        return AgentError(ErrorCode.LLM_INVALID_REQUEST, str(exc), exc)
    if isinstance(exc, openai.APIStatusError):
        return AgentError(ErrorCode.LLM_CALL_FAILED, str(exc), exc)
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return AgentError(ErrorCode.LLM_TIMEOUT, "Model call timed out", exc)
    return AgentError(ErrorCode.SYSTEM_ERROR, f"{type(exc).__name__}: {exc}", exc)
