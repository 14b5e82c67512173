"""Optional OpenTelemetry tracing for turns, model calls and tool calls.

Tracing is off until :func:`instrument` is called.  While it is off every
span helper yields ``None`` and every ``record_*`` helper is a no-op, so
``opentelemetry-api`` is only needed by applications that turn it on.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "cadence") -> None:
    """Start emitting spans through the globally configured TracerProvider.

    Configure the provider (SDK, exporters) before calling this; cadence
    only uses the API package::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())
        cadence.instrument()

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed
            (``pip install cadence[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install cadence[otel]"
        )
    from opentelemetry import trace

    tracer = trace.get_tracer(tracer_name)
    if isinstance(tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured, spans will be discarded")
    else:
        logger.info(f"Tracing enabled with tracer {tracer_name!r}")
    _tracer = tracer


def uninstrument() -> None:
    """Stop emitting spans."""
    global _tracer
    _tracer = None


def is_instrumented() -> bool:
    return _tracer is not None


@asynccontextmanager
async def _span(name: str, attributes: dict, kind=None):
    if _tracer is None:
        yield None
        return
    options = {"attributes": attributes}
    if kind is not None:
        options["kind"] = kind
    with _tracer.start_as_current_span(name, **options) as span:
        yield span


def turn_span(agent_name: str, model: str, conversation_id: str):
    """Span covering a whole turn, every round included."""
    return _span(f"invoke_agent {agent_name}", {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.agent.name": agent_name,
        "gen_ai.request.model": model,
        "gen_ai.conversation.id": conversation_id,
    })


def completion_span(system: str, model: str, round_number: int, streaming: bool):
    """Client span around the model call of one round."""
    kind = None
    if _tracer is not None:
        from opentelemetry.trace import SpanKind
        kind = SpanKind.CLIENT
    return _span(f"chat {model}", {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model,
        "cadence.round": round_number,
        "cadence.streaming": streaming,
    }, kind=kind)


def tool_span(tool_name: str, call_id: str):
    return _span(f"execute_tool {tool_name}", {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "gen_ai.tool.call.id": call_id,
    })


def _set_attributes(span, attributes: dict) -> None:
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def record_turn(span, state: str, rounds: int, model_calls: int) -> None:
    """Annotate a turn span with how the turn ended."""
    if span is None:
        return
    _set_attributes(span, {
        "cadence.turn.state": state,
        "cadence.turn.rounds": rounds,
        "cadence.turn.model_calls": model_calls,
    })


def record_usage(span, usage, response_model: str | None = None) -> None:
    """Annotate a completion span with token usage reported by the provider."""
    if span is None or usage is None:
        return
    _set_attributes(span, {
        "gen_ai.usage.input_tokens": getattr(usage, "prompt_tokens", None),
        "gen_ai.usage.output_tokens": getattr(usage, "completion_tokens", None),
        "gen_ai.response.model": response_model or None,
    })


def record_error(span, exception: BaseException) -> None:
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
