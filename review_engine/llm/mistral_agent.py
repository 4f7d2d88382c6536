from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator

from dotenv import load_dotenv
from mistralai import Mistral, models
from pydantic import TypeAdapter

from ..prompt.render_prompt import render_template
from .contexts import to_template_context
from .json_utils import parse_structured
from .provider import (
    AgentConfigurationError,
    AgentQuotaError,
    AgentResult,
    APICallError,
    ImagePart,
    Message,
    StreamEvent,
    StreamEventType,
    TextPart,
    Usage,
)

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, str] = {
    "stop": "stop",
    "length": "length",
    "model_length": "length",
    "error": "error",
    "tool_calls": "stop",
}


class MistralAgent:
    """A named agent backed by the Mistral chat completion API."""

    MODEL = "mistral-medium-latest"

    def __init__(
        self,
        name: str,
        *,
        system_template: str | None = None,
        system_prompt: str | None = None,
        client: Mistral | None = None,
        model: str | None = None,
        dotenv_path: str | Path | None = None,
    ) -> None:
        if system_template is None and system_prompt is None:
            raise ValueError("Either system_template or system_prompt is required.")
        self.name = name
        self._system_template = system_template
        self._system_prompt = system_prompt

        if dotenv_path is not None:
            load_dotenv(dotenv_path=Path(dotenv_path))
        else:
            load_dotenv()

        # The SDK does not read MISTRAL_API_KEY on its own
        if client is None:
            api_key = os.environ.get("MISTRAL_API_KEY")
            if not api_key:
                raise AgentConfigurationError(
                    "MISTRAL_API_KEY environment variable is required but not set. "
                    "Please set it in your .env file or environment."
                )
            client = Mistral(api_key=api_key)
        self._client = client
        self._model = model or os.environ.get("MISTRAL_MODEL") or self.MODEL

    def system_instruction(self, context: Any = None) -> str:
        if self._system_prompt is not None:
            return self._system_prompt
        assert self._system_template is not None
        return render_template(self._system_template, to_template_context(context))

    def _messages(self, message: Message, context: Any, output: Any) -> list[dict[str, Any]]:
        system = self.system_instruction(context)
        if output is not None:
            schema = json.dumps(TypeAdapter(output).json_schema(), ensure_ascii=False)
            system = f"{system}\n\nRespond with JSON matching this schema:\n{schema}"
        content: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append(
                    {
                        "type": "image_url",
                        "image_url": f"data:{part.mime_type};base64,{part.data}",
                    }
                )
        return [
            {"role": "system", "content": system},
            {"role": message.role, "content": content},
        ]

    async def generate(
        self,
        message: Message,
        *,
        output: Any = None,
        context: Any = None,
        abort_signal: Any = None,
    ) -> AgentResult:
        kwargs: dict[str, Any] = dict(
            model=self._model,
            messages=self._messages(message, context, output),
            temperature=0.2,
        )
        if output is not None:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self._client.chat.complete_async(**kwargs)
        except models.SDKError as exc:
            raise self._translate_error(exc) from exc

        choice = response.choices[0]
        text = _content_text(choice.message.content)
        finish_reason = _FINISH_REASONS.get(str(choice.finish_reason or ""), "other")
        parsed = None
        if output is not None and finish_reason in ("stop", "other"):
            parsed = parse_structured(text, output)
        return AgentResult(
            object=parsed,
            finish_reason=finish_reason,
            text=text,
            usage=_usage(getattr(response, "usage", None)),
        )

    async def stream(
        self,
        message: Message,
        *,
        context: Any = None,
        abort_signal: Any = None,
    ) -> AsyncIterator[StreamEvent]:
        try:
            events = await self._client.chat.stream_async(
                model=self._model,
                messages=self._messages(message, context, None),
                temperature=0.2,
            )
        except models.SDKError as exc:
            raise self._translate_error(exc) from exc

        finish_reason = "other"
        usage = Usage()
        async for event in events:
            if abort_signal is not None and abort_signal.aborted:
                break
            chunk = event.data
            if chunk.choices:
                choice = chunk.choices[0]
                delta = _content_text(choice.delta.content)
                if delta:
                    yield StreamEvent(StreamEventType.TEXT_DELTA, text=delta)
                if choice.finish_reason:
                    finish_reason = _FINISH_REASONS.get(str(choice.finish_reason), "other")
            if getattr(chunk, "usage", None) is not None:
                usage = _usage(chunk.usage)
        yield StreamEvent(
            StreamEventType.STEP_FINISH, finish_reason=finish_reason, usage=usage
        )
        yield StreamEvent(StreamEventType.FINISH, finish_reason=finish_reason, usage=usage)

    @staticmethod
    def _translate_error(exc: models.SDKError) -> Exception:
        status_code = getattr(exc, "status_code", None)
        if status_code == 429:
            return AgentQuotaError("Mistral provider: quota exhausted or rate limited")
        return APICallError(
            f"Mistral API error {status_code}: {getattr(exc, 'message', exc)}",
            status_code=status_code,
            response_body=getattr(exc, "body", None),
        )


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    pieces = []
    for chunk in content:
        text = getattr(chunk, "text", None)
        if text is None and isinstance(chunk, dict):
            text = chunk.get("text")
        if text:
            pieces.append(text)
    return "".join(pieces)


def _usage(usage: Any) -> Usage:
    if usage is None:
        return Usage()
    return Usage(
        prompt_tokens=getattr(usage, "prompt_tokens", None) or 0,
        completion_tokens=getattr(usage, "completion_tokens", None) or 0,
    )
