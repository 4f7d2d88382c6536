"""Single entry point through which the pipelines call agents.

Besides running the call, the adapter sorts failures into two classes.
Content-length overflow becomes ``ContentLengthError``, which callers recover
from by splitting their input. Everything else is surfaced as a coded
``ReviewEngineError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator

from ..errors import (
    ContentLengthError,
    ErrorCode,
    ReviewEngineError,
)
from ..pipeline.concurrency import AbortSignal, raise_if_aborted
from .provider import (
    AgentError,
    AgentParseError,
    AgentResult,
    APICallError,
    Message,
    StreamEvent,
)

if TYPE_CHECKING:
    from .registry import AgentRegistry

logger = logging.getLogger(__name__)

CONTENT_LENGTH_MARKERS: tuple[str, ...] = (
    "maximum context length",
    "tokens_limit_reached",
    "token_limit_reached",
    "context_length_exceeded",
    "many images",
    "exceeds the maximum number of tokens",
)


# "stop" and anything unrecognised count as success.
_FAILED_FINISH_REASONS: dict[str, str] = {
    "length": "max output context exceeded",
    "content-filter": "content filter triggered",
    "error": "unknown error occurred",
}


@dataclass(frozen=True)
class FinishJudgment:
    success: bool
    reason: str


def judge_finish_reason(finish_reason: str | None) -> FinishJudgment:
    """Classify a normalised finish reason into success or failure."""
    failure = _FAILED_FINISH_REASONS.get(finish_reason or "")
    if failure is None:
        return FinishJudgment(True, "")
    return FinishJudgment(False, failure)


def is_content_length_error(exc: BaseException | None) -> bool:
    """Return True when ``exc`` (or anything in its cause chain) is an overflow."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, ReviewEngineError) and exc.code is ErrorCode.AI_MESSAGE_TOO_LARGE:
            return True
        bodies = [str(exc)]
        if isinstance(exc, APICallError) and exc.response_body:
            bodies.append(exc.response_body)
        for body in bodies:
            lowered = body.lower()
            if any(marker in lowered for marker in CONTENT_LENGTH_MARKERS):
                return True
        exc = exc.__cause__ or exc.__context__
    return False


def _wrap_agent_error(agent_id: str, exc: AgentError) -> ReviewEngineError:
    if isinstance(exc, AgentParseError):
        error = ReviewEngineError(
            ErrorCode.AI_INVALID_RESPONSE,
            f"The AI returned an invalid response ({agent_id})",
            expose=True,
        )
    else:
        error = ReviewEngineError(
            ErrorCode.AI_API_ERROR,
            expose=True,
            message_params={"detail": str(exc).splitlines()[0] if str(exc) else agent_id},
        )
    error.__cause__ = exc
    return error


async def call_agent(
    agents: "AgentRegistry",
    agent_id: str,
    message: Message,
    *,
    output: Any = None,
    context: Any = None,
    abort_signal: AbortSignal | None = None,
) -> AgentResult:
    """Resolve ``agent_id`` and run one call.

    Raises:
        ContentLengthError: The input (or output) overflowed the model context.
        AbortedError: The abort signal fired before or during the call.
        ReviewEngineError: ``AI_API_ERROR`` or ``AI_INVALID_RESPONSE`` for
            other agent failures.
    """
    raise_if_aborted(abort_signal)
    agent = agents.get(agent_id)
    try:
        result = await agent.generate(
            message, output=output, context=context, abort_signal=abort_signal
        )
    except ReviewEngineError:
        raise
    except AgentError as exc:
        if is_content_length_error(exc):
            logger.info("Agent %s reported content length overflow", agent_id)
            raise ContentLengthError(str(exc).splitlines()[0]) from exc
        logger.error("Agent %s failed: %s", agent_id, exc, exc_info=True)
        raise _wrap_agent_error(agent_id, exc) from exc
    raise_if_aborted(abort_signal)
    return result


def ensure_finished(result: AgentResult, *, length_is_overflow: bool = False) -> None:
    """Raise when the finish reason of ``result`` is not a success.

    With ``length_is_overflow`` a ``length`` finish is treated as content
    length overflow instead of an API error.
    """
    judgment = judge_finish_reason(result.finish_reason)
    if judgment.success:
        return
    if length_is_overflow and result.finish_reason == "length":
        raise ContentLengthError(judgment.reason)
    raise ReviewEngineError(
        ErrorCode.AI_API_ERROR, expose=True, message_params={"detail": judgment.reason}
    )


async def stream_agent(
    agents: "AgentRegistry",
    agent_id: str,
    message: Message,
    *,
    context: Any = None,
    abort_signal: AbortSignal | None = None,
) -> AsyncIterator[StreamEvent]:
    """Streaming counterpart of ``call_agent`` with the same error mapping."""
    raise_if_aborted(abort_signal)
    agent = agents.get(agent_id)
    try:
        async for event in agent.stream(
            message, context=context, abort_signal=abort_signal
        ):
            raise_if_aborted(abort_signal)
            yield event
    except ReviewEngineError:
        raise
    except AgentError as exc:
        if is_content_length_error(exc):
            raise ContentLengthError(str(exc).splitlines()[0]) from exc
        logger.error("Agent %s failed while streaming: %s", agent_id, exc, exc_info=True)
        raise _wrap_agent_error(agent_id, exc) from exc
