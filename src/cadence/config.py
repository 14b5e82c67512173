import logging

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cadence.errors import AgentError, ErrorCode

logger = logging.getLogger(__name__)


class AgentConfig(BaseSettings):
    """Runtime settings for the round loop.

    Every field can also be set from a ``CADENCE_<FIELD>`` environment
    variable; keyword arguments win over the environment.

    Args:
        max_rounds: Rounds allowed per turn before it ends with
            ``TERMINATED_MAX_ROUNDS``.
        enable_streaming: Consume the model response as a live stream.
        stream_partial_content: Release text as it arrives instead of
            holding each round until it is known to be a final answer.
        enable_tool_calls: Offer the agent's tools to the model.
        model_timeout: Seconds allowed for a non-streaming model call.
        stream_timeout: Seconds allowed to consume one round's stream.
        tool_timeout: Seconds allowed for each tool call.
        max_tool_workers: Size of the pool running synchronous tools.
        max_context_tokens: Token budget for prior history.
        max_consecutive_failed_batches: Consecutive rounds whose tool
            calls all failed before the turn is abandoned, or ``None``
            for no limit.
    """

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        case_sensitive=False,
        frozen=True,
        extra="forbid",
    )

    max_rounds: int = Field(default=10, ge=1)
    enable_streaming: bool = True
    stream_partial_content: bool = True
    enable_tool_calls: bool = True
    model_timeout: float = Field(default=300.0, gt=0)
    stream_timeout: float = Field(default=300.0, gt=0)
    tool_timeout: float = Field(default=60.0, gt=0)
    max_tool_workers: int = Field(default=8, ge=1)
    max_context_tokens: int = Field(default=4000, ge=1)
    max_consecutive_failed_batches: int | None = Field(default=3, ge=1)

    @field_validator("max_consecutive_failed_batches", mode="before")
    @classmethod
    def _none_disables_cap(cls, value):
        if isinstance(value, str) and value.strip().lower() in ("", "none"):
            return None
        return value

    @classmethod
    def from_env(cls, prefix: str = "CADENCE_", **overrides) -> "AgentConfig":
        """Build a config from ``<prefix><FIELD>`` environment variables.

        Explicit keyword overrides win over the environment.

        Raises:
            AgentError: ``CONFIG_INVALID`` if a value does not validate.
        """
        if overrides:
            logger.debug(f"Config overrides: {sorted(overrides)}")
        try:
            return cls(_env_prefix=prefix, **overrides)
        except ValidationError as e:
            raise AgentError(ErrorCode.CONFIG_INVALID, str(e), e) from e
