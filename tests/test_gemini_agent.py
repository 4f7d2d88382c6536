from __future__ import annotations

import asyncio
import os
from pathlib import Path
from types import SimpleNamespace
from typing import Any, cast

import pytest
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from review_engine.llm.contexts import ClassificationContext
from review_engine.llm.gemini_agent import GeminiAgent
from review_engine.llm.provider import (
    AgentQuotaError,
    APICallError,
    Message,
    NoObjectGeneratedError,
    StreamEventType,
)
from review_engine.models.outputs import ClassificationOutput


def _response(text: Any, finish: str = "STOP", parsed: Any = None) -> SimpleNamespace:
    return SimpleNamespace(
        text=text,
        parsed=parsed,
        candidates=[SimpleNamespace(finish_reason=SimpleNamespace(name=finish))],
        usage_metadata=SimpleNamespace(prompt_token_count=12, candidates_token_count=5),
    )


class _DummyModels:
    def __init__(self, responses: list[Any] | None = None, stream: list[Any] | None = None) -> None:
        self.calls: list[dict[str, object]] = []
        self._responses = list(responses or [])
        self._stream = list(stream or [])

    async def generate_content(self, **kwargs: object) -> Any:
        self.calls.append(kwargs)
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_content_stream(self, **kwargs: object) -> Any:
        self.calls.append(kwargs)
        chunks = self._stream

        async def _iterate():
            for chunk in chunks:
                yield chunk

        return _iterate()


class _DummyClient:
    def __init__(self, **kwargs: Any) -> None:
        self.aio = SimpleNamespace(models=_DummyModels(**kwargs))

    @property
    def models(self) -> _DummyModels:
        return self.aio.models


def _agent(client: _DummyClient, **kwargs: Any) -> GeminiAgent:
    return GeminiAgent(
        "checklist-category",
        system_template="checklist_category.md",
        client=cast(genai.Client, client),
        **kwargs,
    )


def test_generate_renders_system_prompt_and_sets_schema() -> None:
    client = _DummyClient(responses=[_response('{"categories": []}')])
    agent = _agent(client)

    result = asyncio.run(
        agent.generate(
            Message.from_text("Group these"),
            output=ClassificationOutput,
            context=ClassificationContext(max_categories=3, max_checklists_per_category=2),
        )
    )

    assert isinstance(result.object, ClassificationOutput)
    assert result.finish_reason == "stop"
    assert result.usage.prompt_tokens == 12
    call = client.models.calls[0]
    assert call["model"] == agent.model
    content = call["contents"][0]
    assert content.parts[0].text == "Group these"
    config = call["config"]
    assert isinstance(config, types.GenerateContentConfig)
    assert "at most 3 categories" in config.system_instruction
    assert config.response_mime_type == "application/json"
    assert config.thinking_config.thinking_budget == agent.MAX_THINKING_BUDGET


def test_generate_prefers_parsed_payload() -> None:
    parsed = ClassificationOutput.model_validate(
        {"categories": [{"name": "A", "checklist_ids": [1]}]}
    )
    client = _DummyClient(responses=[_response("ignored", parsed=parsed)])

    result = asyncio.run(
        _agent(client).generate(Message.from_text("x"), output=ClassificationOutput)
    )

    assert result.object.categories[0].checklist_ids == [1]


def test_generate_without_json_raises_parse_error() -> None:
    client = _DummyClient(responses=[_response("No JSON here")])

    with pytest.raises(NoObjectGeneratedError) as exc_info:
        asyncio.run(_agent(client).generate(Message.from_text("x"), output=ClassificationOutput))

    assert exc_info.value.response_text == "No JSON here"


def test_max_tokens_maps_to_length_without_parsing() -> None:
    client = _DummyClient(responses=[_response("{\"categ", finish="MAX_TOKENS")])

    result = asyncio.run(
        _agent(client).generate(Message.from_text("x"), output=ClassificationOutput)
    )

    assert result.finish_reason == "length"
    assert result.object is None


def test_images_are_sent_as_inline_bytes() -> None:
    client = _DummyClient(responses=[_response("free text")])
    message = Message.from_text("Look").add_image("data:image/png;base64,aGVsbG8=")

    result = asyncio.run(_agent(client).generate(message))

    assert result.text == "free text"
    parts = client.models.calls[0]["contents"][0].parts
    assert parts[1].inline_data.data == b"hello"
    assert parts[1].inline_data.mime_type == "image/png"


def test_rate_limit_becomes_quota_error() -> None:
    error = genai_errors.ClientError(
        429, {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}}
    )
    client = _DummyClient(responses=[error])

    with pytest.raises(AgentQuotaError):
        asyncio.run(_agent(client, max_retries=0).generate(Message.from_text("x")))


def test_rate_limit_is_retried_before_giving_up() -> None:
    error = genai_errors.ClientError(
        429, {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}}
    )
    client = _DummyClient(responses=[error, _response("ok")])
    agent = _agent(client, max_retries=1, min_request_interval=0.001)

    result = asyncio.run(agent.generate(Message.from_text("x")))

    assert result.text == "ok"
    assert len(client.models.calls) == 2


def test_other_api_errors_keep_status_and_body() -> None:
    error = genai_errors.ClientError(
        400,
        {
            "error": {
                "code": 400,
                "message": "The input token count exceeds the maximum number of tokens allowed",
                "status": "INVALID_ARGUMENT",
            }
        },
    )
    client = _DummyClient(responses=[error])

    with pytest.raises(APICallError) as exc_info:
        asyncio.run(_agent(client).generate(Message.from_text("x")))

    assert exc_info.value.status_code == 400
    assert "exceeds the maximum number of tokens" in str(exc_info.value)


def test_stream_yields_text_then_finish() -> None:
    chunks = [
        SimpleNamespace(text="Hel", candidates=None, usage_metadata=None),
        _response("lo", finish="STOP"),
    ]
    client = _DummyClient(stream=chunks)
    agent = GeminiAgent(
        "chat-answer",
        system_prompt="Answer briefly.",
        client=cast(genai.Client, client),
    )

    async def _collect():
        return [event async for event in agent.stream(Message.from_text("Hi"))]

    events = asyncio.run(_collect())

    assert [e.text for e in events if e.type is StreamEventType.TEXT_DELTA] == ["Hel", "lo"]
    assert events[-1].type is StreamEventType.FINISH
    assert events[-1].finish_reason == "stop"
    assert events[-1].usage.completion_tokens == 5
    assert client.models.calls[0]["config"].system_instruction == "Answer briefly."


def test_requires_a_system_prompt() -> None:
    with pytest.raises(ValueError):
        GeminiAgent("x", client=cast(genai.Client, _DummyClient()))


def test_loads_dotenv_when_path_provided(tmp_path: Path) -> None:
    dotenv_path = tmp_path / ".env"
    dotenv_path.write_text("GEMINI_MODEL=gemini-from-dotenv\n", encoding="utf-8")
    previous_value = os.environ.pop("GEMINI_MODEL", None)

    try:
        agent = _agent(_DummyClient(), dotenv_path=dotenv_path)
        assert agent.model == "gemini-from-dotenv"
    finally:
        if previous_value is None:
            os.environ.pop("GEMINI_MODEL", None)
        else:
            os.environ["GEMINI_MODEL"] = previous_value
