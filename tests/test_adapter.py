from __future__ import annotations

import asyncio

import pytest

from fakes import FakeAgent, Harness, Reply
from review_engine.errors import (
    AbortedError,
    ContentLengthError,
    ErrorCode,
    ReviewEngineError,
)
from review_engine.llm.adapter import (
    call_agent,
    ensure_finished,
    is_content_length_error,
    judge_finish_reason,
)
from review_engine.llm.provider import (
    AgentParseError,
    AgentResult,
    APICallError,
    Message,
)
from review_engine.models.outputs import ClassificationOutput
from review_engine.pipeline.concurrency import AbortSignal


@pytest.mark.parametrize(
    "reason, success",
    [("stop", True), ("other", True), (None, True), ("length", False),
     ("content-filter", False), ("error", False)],
)
def test_judge_finish_reason(reason, success):
    judgment = judge_finish_reason(reason)

    assert judgment.success is success
    if reason == "length":
        assert judgment.reason == "max output context exceeded"


@pytest.mark.parametrize(
    "body",
    [
        '{"error": {"message": "This model\'s maximum context length is 128000 tokens"}}',
        '{"code": "tokens_limit_reached"}',
        '{"error": {"code": "context_length_exceeded"}}',
        "Too many images in request",
        "The input token count exceeds the maximum number of tokens allowed",
    ],
)
def test_content_length_detected_from_response_body(body):
    exc = APICallError("Bad request", status_code=400, response_body=body)

    assert is_content_length_error(exc)


def test_content_length_detected_through_cause_chain():
    inner = APICallError("Bad request", response_body="context_length_exceeded")
    outer = RuntimeError("wrapped")
    outer.__cause__ = inner

    assert is_content_length_error(outer)
    assert is_content_length_error(ContentLengthError())
    assert not is_content_length_error(APICallError("server error", status_code=500))


def test_call_agent_returns_structured_result():
    agent = FakeAgent(replies=[Reply(object={"categories": []})])
    registry = Harness(agents={"checklist-category": agent}).registry()

    result = asyncio.run(
        call_agent(
            registry,
            "checklist-category",
            Message.from_text("hi"),
            output=ClassificationOutput,
        )
    )

    assert isinstance(result.object, ClassificationOutput)
    assert result.finish_reason == "stop"
    assert agent.calls[0].output is ClassificationOutput


def test_call_agent_raises_content_length_error():
    agent = FakeAgent(replies=[APICallError("400", response_body="maximum context length")])
    registry = Harness(agents={"a": agent}).registry()

    with pytest.raises(ContentLengthError):
        asyncio.run(call_agent(registry, "a", Message.from_text("hi")))


def test_call_agent_wraps_other_api_errors():
    agent = FakeAgent(replies=[APICallError("Gemini API error 500: boom", status_code=500)])
    registry = Harness(agents={"a": agent}).registry()

    with pytest.raises(ReviewEngineError) as info:
        asyncio.run(call_agent(registry, "a", Message.from_text("hi")))

    assert info.value.code is ErrorCode.AI_API_ERROR
    assert info.value.expose
    assert "boom" in info.value.message
    assert not isinstance(info.value, ContentLengthError)


def test_call_agent_maps_parse_errors_to_invalid_response():
    agent = FakeAgent(replies=[AgentParseError("bad json", response_text="{")])
    registry = Harness(agents={"a": agent}).registry()

    with pytest.raises(ReviewEngineError) as info:
        asyncio.run(call_agent(registry, "a", Message.from_text("hi")))

    assert info.value.code is ErrorCode.AI_INVALID_RESPONSE


def test_call_agent_unknown_agent_is_internal_error():
    registry = Harness().registry()

    with pytest.raises(ReviewEngineError) as info:
        asyncio.run(call_agent(registry, "missing", Message.from_text("hi")))

    assert info.value.code is ErrorCode.AGENT_NOT_FOUND


def test_call_agent_checks_abort_before_calling():
    agent = FakeAgent(replies=[Reply()])
    registry = Harness(agents={"a": agent}).registry()
    signal = AbortSignal()
    signal.abort("stopped by user")

    with pytest.raises(AbortedError):
        asyncio.run(call_agent(registry, "a", Message.from_text("hi"), abort_signal=signal))

    assert agent.calls == []


def test_ensure_finished_treats_length_as_overflow_only_when_asked():
    result = AgentResult(object=None, finish_reason="length")

    with pytest.raises(ContentLengthError):
        ensure_finished(result, length_is_overflow=True)
    with pytest.raises(ReviewEngineError) as info:
        ensure_finished(result)
    assert info.value.code is ErrorCode.AI_API_ERROR
    assert "max output context exceeded" in info.value.message

    ensure_finished(AgentResult(object=None, finish_reason="stop"))
